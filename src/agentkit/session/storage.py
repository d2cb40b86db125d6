"""Read-only access to persisted agent transcripts.

The agent CLI writes one NDJSON file per session under
``<projects_root>/<project-slug>/<session-id>.jsonl``. This module never
writes to that tree.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from agentkit.logging import get_logger
from agentkit.session.protocols import ProtocolMessage, UserMessage, first_text, message_from_dict

log = get_logger("storage")

TRANSCRIPT_SUFFIX = ".jsonl"

# Values above this are epoch milliseconds
_MILLIS_THRESHOLD = 1e11


def default_projects_root() -> Path:
    """``$CLAUDE_HOME/.claude/projects``, else ``~/.claude/projects``."""
    claude_home = os.environ.get("CLAUDE_HOME", "").strip()
    base = Path(claude_home) if claude_home else Path.home()
    return base / ".claude" / "projects"


def normalize_session_id(session_id: str) -> str:
    """Trim a session id and strip a trailing ``.jsonl``.

    Raises:
        ValueError: The id is blank or contains a path separator.
    """
    normalized = session_id.strip()
    if normalized.endswith(TRANSCRIPT_SUFFIX):
        normalized = normalized[: -len(TRANSCRIPT_SUFFIX)]
    if not normalized:
        raise ValueError("Session id is empty")
    if "/" in normalized or "\\" in normalized or normalized in (".", ".."):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return normalized


def parse_timestamp(value: Any) -> float | None:
    """Convert a recorded timestamp to epoch seconds.

    Accepts epoch seconds, epoch milliseconds, numeric strings and ISO-8601.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
            except ValueError:
                return None
    else:
        return None
    return number / 1000.0 if number > _MILLIS_THRESHOLD else number


@dataclass(frozen=True, slots=True)
class TranscriptInfo:
    """Listing entry for one persisted transcript."""

    session_id: str
    path: Path
    modified_time: float
    summary: str | None = None


class TranscriptStore:
    """Locates and parses persisted session transcripts."""

    def __init__(self, projects_root: str | Path | None = None) -> None:
        if projects_root:
            self.projects_root = Path(projects_root).expanduser()
        else:
            self.projects_root = default_projects_root()

    def locate(self, session_id: str) -> Path | None:
        """Find the transcript file for a session id, or None."""
        normalized = normalize_session_id(session_id)
        if not self.projects_root.is_dir():
            return None
        matches = sorted(
            self.projects_root.glob(f"*/{normalized}{TRANSCRIPT_SUFFIX}"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return matches[0] if matches else None

    def read_messages(self, path: Path) -> list[ProtocolMessage]:
        """Parse an NDJSON transcript.

        Blank and unparseable lines are skipped, as are records that are not
        protocol messages. I/O errors propagate.
        """
        messages: list[ProtocolMessage] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    record = json.loads(raw)
                except json.JSONDecodeError:
                    log.debug("%s:%d: skipping unparseable line", path.name, line_no)
                    continue
                if not isinstance(record, dict):
                    continue
                message = message_from_dict(record)
                if message is not None:
                    messages.append(message)
        return messages

    def load(self, session_id: str) -> list[ProtocolMessage]:
        """Transcript for a session id; empty when none is persisted."""
        path = self.locate(session_id)
        if path is None:
            log.debug("No transcript for session %s under %s", session_id, self.projects_root)
            return []
        return self.read_messages(path)

    def list_sessions(self, limit: int | None = None) -> list[TranscriptInfo]:
        """Persisted transcripts, newest first."""
        if not self.projects_root.is_dir():
            return []

        infos: list[TranscriptInfo] = []
        for path in self.projects_root.glob(f"*/*{TRANSCRIPT_SUFFIX}"):
            try:
                modified = path.stat().st_mtime
            except OSError:
                continue
            infos.append(
                TranscriptInfo(
                    session_id=path.stem,
                    path=path,
                    modified_time=modified,
                    summary=self._first_prompt(path),
                )
            )

        infos.sort(key=lambda info: info.modified_time, reverse=True)
        if limit is not None and limit > 0:
            return infos[:limit]
        return infos

    def _first_prompt(self, path: Path) -> str | None:
        try:
            messages = self.read_messages(path)
        except OSError as e:
            log.debug("Could not read %s: %s", path, e)
            return None
        for message in messages:
            if isinstance(message, UserMessage):
                text = first_text(message).strip()
                if text:
                    return text.splitlines()[0][:120]
        return None
