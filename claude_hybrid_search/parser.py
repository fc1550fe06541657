"""
JSONL parser for Claude Code session transcripts.

This module turns one raw session log into a normalized text document and
reads the per-project sessions-index.json manifests that describe sessions
with richer metadata.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

FIRST_PROMPT_CHARS = 500
USER_PREFIX = "User: "
ASSISTANT_PREFIX = "Assistant: "
TOOL_PAYLOAD_PREFIXES = ('{"tool', '{"type":"tool')
MIN_TEXT_CHARS = 5
DUMP_MIN_CHARS = 1000


class ManifestError(Exception):
    """Raised when a sessions-index.json manifest cannot be read."""


@dataclass
class PlainText:
    """Message content given as a bare string."""
    text: str


@dataclass
class ContentBlock:
    """One typed block of list-shaped message content."""
    kind: str
    text: Optional[str] = None


@dataclass
class Blocks:
    """Message content given as a list of typed blocks."""
    blocks: List[ContentBlock] = field(default_factory=list)


MessageContent = Union[PlainText, Blocks]


@dataclass
class ParsedTranscript:
    """Text and counters extracted from one session file."""
    full_text: str = ""
    first_prompt: Optional[str] = None
    message_count: int = 0
    first_timestamp: Optional[str] = None
    last_timestamp: Optional[str] = None


@dataclass
class ManifestEntry:
    """A single entry of a project's sessions-index.json."""
    session_id: str
    full_path: Optional[str] = None
    first_prompt: Optional[str] = None
    summary: Optional[str] = None
    slug: Optional[str] = None
    project_path: Optional[str] = None
    message_count: Optional[int] = None
    created: Optional[str] = None
    modified: Optional[str] = None
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    git_branch: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ManifestEntry"]:
        session_id = data.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            return None

        message_count = data.get("messageCount")
        is_count = isinstance(message_count, int) and not isinstance(message_count, bool)
        if not is_count or message_count < 0:
            message_count = None

        def text(key: str) -> Optional[str]:
            value = data.get(key)
            return value if isinstance(value, str) else None

        return cls(
            session_id=session_id,
            full_path=text("fullPath"),
            first_prompt=text("firstPrompt"),
            summary=text("summary"),
            slug=text("slug"),
            project_path=text("projectPath"),
            message_count=message_count,
            created=text("created"),
            modified=text("modified"),
            created_at=text("createdAt"),
            last_activity_at=text("lastActivityAt"),
            git_branch=text("gitBranch"),
        )


def parse_content(raw: Any) -> Optional[MessageContent]:
    """Convert a raw JSON content payload into PlainText or Blocks."""
    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, list):
        blocks = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            text = item.get("text")
            blocks.append(
                ContentBlock(
                    kind=kind if isinstance(kind, str) else "",
                    text=text if isinstance(text, str) else None,
                )
            )
        return Blocks(blocks)
    return None


def extract_text(content: Optional[MessageContent]) -> Optional[str]:
    """Return the human-readable text of a message, or None if it has none.

    Block content keeps only blocks tagged ``text`` and joins them with
    newlines in their original order; tool calls, tool results and
    attachments are dropped.
    """
    if isinstance(content, PlainText):
        return content.text
    if isinstance(content, Blocks):
        texts = [
            block.text
            for block in content.blocks
            if block.kind == "text" and block.text is not None
        ]
        return "\n".join(texts) if texts else None
    return None


def is_noise(text: str) -> bool:
    """Check whether text should be kept out of the indexed full text."""
    trimmed = text.strip()

    # Status blips like "ok"
    if len(trimmed) < MIN_TEXT_CHARS:
        return True

    # Serialized tool-call payloads
    if trimmed.startswith(TOOL_PAYLOAD_PREFIXES):
        return True

    # Raw dumps: one huge token
    if len(trimmed) > DUMP_MIN_CHARS and " " not in trimmed:
        return True

    return False


def file_mtime(path: Union[str, Path]) -> float:
    """Return a file's modification time in seconds since the epoch."""
    return os.stat(path).st_mtime


def parse_manifest(path: Union[str, Path]) -> List[ManifestEntry]:
    """Read a sessions-index.json file into manifest entries.

    The file is either a JSON list of entries or an object holding them
    under ``entries``. Entries without a session id are skipped.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Failed to read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"Failed to parse session index {path}: {e}") from e

    if isinstance(data, dict):
        raw_entries = data.get("entries", [])
    else:
        raw_entries = data

    if not isinstance(raw_entries, list):
        raise ManifestError(f"Session index {path} has no entry list")

    entries = []
    for raw in raw_entries:
        entry = ManifestEntry.from_dict(raw) if isinstance(raw, dict) else None
        if entry is None:
            logger.debug(f"Skipping manifest entry without sessionId in {path}")
            continue
        entries.append(entry)
    return entries


class TranscriptParser:
    """Parser for Claude Code session JSONL files."""

    def __init__(self, first_prompt_chars: int = FIRST_PROMPT_CHARS):
        self.first_prompt_chars = first_prompt_chars

    def parse_file(self, file_path: Union[str, Path], max_chars: int) -> ParsedTranscript:
        """Parse one session file into a ParsedTranscript.

        Raises OSError when the file itself cannot be opened. Individual
        bad lines are skipped.
        """
        result = ParsedTranscript()
        parts: List[str] = []
        length = 0

        with open(file_path, "rb") as f:
            for line_num, raw_line in enumerate(f, 1):
                try:
                    line = raw_line.decode("utf-8")
                except UnicodeDecodeError as e:
                    logger.warning(f"Unreadable line {line_num} in {file_path}: {e}")
                    continue

                line = line.strip()
                if not line:
                    continue

                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Invalid JSON on line {line_num} in {file_path}")
                    continue
                if not isinstance(record, dict):
                    continue

                timestamp = record.get("timestamp")
                if isinstance(timestamp, str):
                    if result.first_timestamp is None:
                        result.first_timestamp = timestamp
                    result.last_timestamp = timestamp

                text = self._extract_message_text(record)
                if text is None or not text.strip():
                    continue

                result.message_count += 1
                is_user = self._resolve_role(record) == "user"

                # Captured before the noise check
                if is_user and result.first_prompt is None:
                    result.first_prompt = text[: self.first_prompt_chars]

                if is_noise(text):
                    continue

                if length < max_chars:
                    remaining = max_chars - length
                    prefix = USER_PREFIX if is_user else ASSISTANT_PREFIX
                    chunk = f"{prefix}{text[:remaining]}\n"
                    parts.append(chunk)
                    length += len(chunk)

        result.full_text = "".join(parts)
        return result

    def _extract_message_text(self, record: Dict[str, Any]) -> Optional[str]:
        """Extract text from the nested message payload of a record."""
        message = record.get("message")
        if not isinstance(message, dict):
            return None
        return extract_text(parse_content(message.get("content")))

    def _resolve_role(self, record: Dict[str, Any]) -> str:
        """Resolve a record's role: explicit role, nested role, then legacy type."""
        role = record.get("role")
        if isinstance(role, str):
            return role

        message = record.get("message")
        if isinstance(message, dict) and isinstance(message.get("role"), str):
            return message["role"]

        msg_type = record.get("type")
        if msg_type in ("human", "user"):
            return "user"
        if isinstance(msg_type, str):
            return msg_type
        return "unknown"
