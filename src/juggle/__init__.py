"""Session-scoped work item tracking driven by an autonomous agent loop."""

__version__ = "0.3.0"
