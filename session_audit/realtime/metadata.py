"""Session metadata index.

Keeps descriptive attributes per base session id (project, model,
routing, token usage, thinking level). Log lines update the
model/token/thinking fields; the agent's ``sessions.json`` index
snapshot updates the routing fields. Updates are partial and the most
recent write wins.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..config import DEFAULT_AGENT_EMOJI, DEFAULT_AGENT_EMOJIS
from ..records import (
    LogRecord,
    ModelChangeRecord,
    ModelSnapshotRecord,
    SessionRecord,
    ThinkingLevelRecord,
)

logger = logging.getLogger(__name__)


SESSION_FILE_RE = re.compile(r"^([a-f0-9-]{36})(?:-topic-(\d+))?\.jsonl$")


def is_session_file(filename: str) -> bool:
    """True for ``<36-char id>.jsonl`` or ``<36-char id>-topic-<n>.jsonl``."""
    return SESSION_FILE_RE.match(filename) is not None


def base_session_id(filename: str) -> str:
    """Session id of a log file name, with any thread suffix stripped."""
    match = SESSION_FILE_RE.match(filename)
    if match:
        return match.group(1)
    name = filename[:-len(".jsonl")] if filename.endswith(".jsonl") else filename
    return re.sub(r"-topic-\d+$", "", name)


def thread_number(filename: str) -> Optional[str]:
    """Thread number of a log file name, or None."""
    match = SESSION_FILE_RE.match(filename)
    return match.group(2) if match else None


def project_name_from_cwd(cwd: str, fallback: str) -> str:
    """Last path segment of cwd; the parent's name if that segment is "home"."""
    parts = [part for part in cwd.split("/") if part]
    if not parts:
        return fallback
    name = parts[-1]
    if name == "home" and len(parts) > 1:
        name = parts[-2]
    return name


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class SessionMetadata:
    """Mutable metadata for one base session id."""

    session_id: str
    cwd: str = ""
    project_name: str = ""
    model: str = ""
    chat_type: str = "unknown"
    key: str = ""
    provider: str = ""
    surface: str = ""
    used_tokens: Optional[int] = None
    context_tokens: Optional[int] = None
    updated_at: Optional[datetime] = None
    group_id: str = ""
    thinking_level: str = ""
    agent_name: str = ""

    @property
    def is_subagent(self) -> bool:
        return "subag" in self.key


@dataclass(frozen=True)
class ProjectInfo:
    """Display-ready view of a session's metadata."""

    session_id: str
    short_id: str
    name: str
    emoji: str
    model: str
    chat_type: str
    key: str
    is_subagent: bool
    cwd: str
    tokens: str
    token_percent: Optional[int]
    provider: str
    surface: str
    updated_at: str
    group_id: str
    thinking_level: str
    agent_name: str


class SessionMetadataIndex:
    """In-memory map from base session id to :class:`SessionMetadata`."""

    def __init__(self, agent_emojis: Optional[Dict[str, str]] = None):
        self._sessions: Dict[str, SessionMetadata] = {}
        self._agent_emojis = dict(agent_emojis if agent_emojis is not None else DEFAULT_AGENT_EMOJIS)

    def get(self, session_id: str) -> Optional[SessionMetadata]:
        return self._sessions.get(session_id)

    def _ensure(self, session_id: str) -> SessionMetadata:
        meta = self._sessions.get(session_id)
        if meta is None:
            meta = SessionMetadata(session_id=session_id, project_name=session_id[:8])
            self._sessions[session_id] = meta
        return meta

    def apply_record(
        self,
        session_id: str,
        record: LogRecord,
        agent_name: Optional[str] = None,
    ) -> None:
        """Update metadata from whatever the record carries.

        Fields the record does not carry are left untouched.
        """
        meta = self._ensure(session_id)
        if agent_name:
            meta.agent_name = agent_name

        if isinstance(record, SessionRecord) and record.cwd:
            meta.cwd = record.cwd
            meta.project_name = project_name_from_cwd(record.cwd, session_id[:8])
        elif isinstance(record, ThinkingLevelRecord):
            meta.thinking_level = record.level
        elif isinstance(record, ModelChangeRecord):
            meta.model = record.model_id
            if record.provider:
                meta.provider = record.provider
        elif isinstance(record, ModelSnapshotRecord):
            meta.model = record.model_id

        if record.usage_total_tokens:
            meta.used_tokens = record.usage_total_tokens

    def apply_index_snapshot(self, data: Any, agent_name: str = "") -> int:
        """Load routing metadata from a session index snapshot.

        The index is a JSON object keyed by routing keys of the form
        ``namespace:agent:surface:chatType[:groupId]``.

        Args:
            data: Parsed index contents
            agent_name: Agent namespace the index belongs to

        Returns:
            Number of sessions updated
        """
        if not isinstance(data, dict):
            logger.warning("Session index for %s is not an object", agent_name or "?")
            return 0

        count = 0
        for key, value in data.items():
            if not isinstance(value, dict):
                continue
            session_id = value.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                continue

            parts = str(key).split(":")
            surface = ""
            chat_type = "unknown"
            group_id = ""
            if len(parts) >= 4:
                surface = parts[2]
                chat_type = parts[3] or "unknown"
                group_id = parts[4] if len(parts) > 4 else ""
            elif len(parts) == 3:
                surface = parts[2]
                chat_type = "direct"

            origin = value.get("origin")
            if isinstance(origin, dict):
                surface = origin.get("surface") or surface
                chat_type = origin.get("chatType") or chat_type
                provider = origin.get("provider")
            else:
                provider = None

            meta = self._ensure(session_id)
            meta.key = str(key)
            meta.surface = str(surface)
            meta.chat_type = str(chat_type)
            meta.group_id = str(value.get("groupId") or group_id)
            if agent_name:
                meta.agent_name = agent_name
            if isinstance(provider, str) and provider:
                meta.provider = provider

            model = value.get("model")
            if isinstance(model, str) and model:
                meta.model = model
            context_tokens = value.get("contextTokens")
            if isinstance(context_tokens, int) and not isinstance(context_tokens, bool) and context_tokens > 0:
                meta.context_tokens = context_tokens
            updated_at = value.get("updatedAt")
            if isinstance(updated_at, (int, float)) and not isinstance(updated_at, bool):
                meta.updated_at = datetime.fromtimestamp(updated_at / 1000, tz=timezone.utc)
            count += 1

        return count

    def load_index_file(self, path: Path, agent_name: str = "") -> int:
        """Read and apply a ``sessions.json`` index file.

        A missing file is not an error; unreadable or corrupt files are
        logged and skipped.

        Returns:
            Number of sessions updated
        """
        path = Path(path)
        if not path.exists():
            return 0
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load session index %s: %s", path, e)
            return 0

        count = self.apply_index_snapshot(data, agent_name)
        logger.debug("Loaded %d sessions from %s", count, path)
        return count

    def rebuild(
        self,
        session_id: str,
        records: Iterable[LogRecord],
        agent_name: Optional[str] = None,
    ) -> SessionMetadata:
        """Re-derive log-sourced metadata from a whole session file.

        Records are applied in file order, so the latest cwd, model,
        token count and thinking level win.
        """
        meta = self._ensure(session_id)
        for record in records:
            self.apply_record(session_id, record, agent_name)
        return meta

    def project(self, session_id: str) -> ProjectInfo:
        """Compute the display view for a session."""
        short_id = session_id[:8]
        meta = self._sessions.get(session_id) or SessionMetadata(session_id=session_id)

        name = meta.project_name or short_id
        emoji = (
            self._agent_emojis.get(name)
            or self._agent_emojis.get(meta.agent_name)
            or DEFAULT_AGENT_EMOJI
        )

        tokens = ""
        percent = None
        if meta.used_tokens and meta.context_tokens:
            percent = _round_half_up(meta.used_tokens / meta.context_tokens * 100)
            tokens = (
                f"{_round_half_up(meta.used_tokens / 1000)}k/"
                f"{_round_half_up(meta.context_tokens / 1000)}k ({percent}%)"
            )
        elif meta.context_tokens:
            tokens = f"{_round_half_up(meta.context_tokens / 1000)}k"

        updated_at = ""
        if meta.updated_at is not None:
            updated_at = meta.updated_at.astimezone().strftime("%H:%M")

        return ProjectInfo(
            session_id=session_id,
            short_id=short_id,
            name=name,
            emoji=emoji,
            model=meta.model.split("/")[-1] if meta.model else "",
            chat_type=meta.chat_type or "unknown",
            key=meta.key,
            is_subagent=meta.is_subagent,
            cwd=meta.cwd,
            tokens=tokens,
            token_percent=percent,
            provider=meta.provider,
            surface=meta.surface,
            updated_at=updated_at,
            group_id=meta.group_id,
            thinking_level=meta.thinking_level,
            agent_name=meta.agent_name,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
