"""Per-session artifact layout under the project directory."""

from __future__ import annotations

from pathlib import Path

JUGGLE_DIR_NAME = ".juggle"
LAST_OUTPUT_FILE_NAME = "last_output.txt"


class SessionWorkdir:
    """Creates deterministic ``<project>/.juggle/sessions/<id>/`` directories."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def session_dir(self, session_id: str) -> Path:
        return self.project_dir / JUGGLE_DIR_NAME / "sessions" / session_id

    def last_output_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / LAST_OUTPUT_FILE_NAME

    def write_last_output(self, session_id: str, output: str) -> Path:
        """Overwrite the raw output of the latest agent invocation."""

        path = self.last_output_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, "utf-8")
        return path
