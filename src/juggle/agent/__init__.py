"""Agent orchestration: runner backends, signal parsing, prompts, and the loop."""
