"""
Locate session sources under the Claude projects directory.

Each project directory is named after its working directory with every path
separator replaced by "-", e.g. ``-Users-alice-src-app`` for
``/Users/alice/src/app``. It may hold a ``sessions-index.json`` manifest and
one ``<session-id>.jsonl`` transcript per session.
"""

import logging
from pathlib import Path
from typing import Dict, List, Tuple, Union

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "sessions-index.json"
SESSION_FILE_SUFFIX = ".jsonl"
AGENT_FILE_PREFIX = "agent-"
MIN_SESSION_ID_CHARS = 32


def decode_project_path(encoded: str) -> str:
    """Recover a project path from its directory name."""
    return encoded.replace("-", "/")


def is_session_file_name(stem: str) -> bool:
    """Check that a file stem looks like a session UUID and not an agent log."""
    if stem.startswith(AGENT_FILE_PREFIX):
        return False
    return len(stem) >= MIN_SESSION_ID_CHARS and "-" in stem


def project_dir_of(path: Union[str, Path]) -> Path:
    """Project directory that contains a manifest or transcript."""
    return Path(path).parent


def encoded_project_name(path: Union[str, Path]) -> str:
    """Encoded project directory name for a manifest or transcript."""
    return Path(path).parent.name


class ProjectDiscovery:
    """Finds manifests and raw transcripts one level below claude_dir."""

    def __init__(self, claude_dir: Union[str, Path]):
        self.claude_dir = Path(claude_dir).expanduser()
        self.logger = logging.getLogger(__name__)

    def discover_manifests(self) -> List[Path]:
        """All per-project sessions-index.json files, in path order."""
        if not self.claude_dir.is_dir():
            self.logger.debug(f"Claude directory not found: {self.claude_dir}")
            return []
        return sorted(p for p in self.claude_dir.glob(f"*/{MANIFEST_FILE_NAME}") if p.is_file())

    def discover_session_files(self) -> Dict[str, Tuple[Path, str]]:
        """Map session id to (transcript path, encoded project name)."""
        if not self.claude_dir.is_dir():
            self.logger.debug(f"Claude directory not found: {self.claude_dir}")
            return {}

        sessions = {}
        for path in sorted(self.claude_dir.glob(f"*/*{SESSION_FILE_SUFFIX}")):
            if not path.is_file() or not is_session_file_name(path.stem):
                continue
            sessions[path.stem] = (path, encoded_project_name(path))
        return sessions
