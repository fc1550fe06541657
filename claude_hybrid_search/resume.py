"""
Hand a session back to Claude Code with ``claude --resume``.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CLAUDE_BINARY = "claude"


class ResumeError(Exception):
    """Raised when the Claude process cannot be launched or exits with an error."""


def resume_session(
    session_id: str, project_path: Optional[str] = None, binary: str = CLAUDE_BINARY
) -> None:
    """Run ``claude --resume <session_id>``, from the project directory if it exists.

    Claude Code looks sessions up relative to the current directory, so the
    process is started in ``project_path`` when that directory is present.
    """
    cmd = [binary, "--resume", session_id]
    cwd = None
    if project_path and Path(project_path).is_dir():
        cwd = project_path

    logger.info(f"Resuming session {session_id} in {cwd or Path.cwd()}")

    try:
        completed = subprocess.run(cmd, cwd=cwd)
    except FileNotFoundError as e:
        raise ResumeError(f"Failed to launch '{binary} --resume'. Is Claude Code installed?") from e
    except OSError as e:
        raise ResumeError(f"Failed to launch '{binary} --resume': {e}") from e

    if completed.returncode != 0:
        raise ResumeError(f"{binary} --resume exited with status {completed.returncode}")
