"""Pending audit events.

A :class:`PendingEvent` is one user-visible occurrence extracted from a
session log. Events wait in a batch until it is flushed; tool-call events
are updated in place once their result line arrives.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


_GROUP_KEY_RE = re.compile(r"^(.+)-topic-(\d+)$")


class EventKind(str, Enum):
    """Type tag of a pending event."""

    TOOL_CALL = "toolCall"
    USER_MESSAGE = "user_message"
    ASSISTANT_COMPLETE = "assistant_complete"
    THINKING = "thinking"
    THINKING_LEVEL = "thinking_level"
    ERROR = "error"
    PROMPT_ERROR = "prompt_error"
    MODEL_CHANGE = "model_change"
    COMPACTION = "compaction"
    IMAGE = "image"


@dataclass
class DiffStats:
    """Line and character counts of a unified-diff-like text."""

    added: int = 0
    removed: int = 0
    added_chars: int = 0
    removed_chars: int = 0


def parse_diff_stats(diff: Optional[str]) -> Optional[DiffStats]:
    """Count added/removed lines in a diff, ignoring ``+++``/``---`` headers.

    Args:
        diff: Diff text

    Returns:
        DiffStats, or None if the text has no added or removed lines
    """
    if not diff:
        return None

    stats = DiffStats()
    for line in diff.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            stats.added += 1
            stats.added_chars += len(line) - 1
        elif line.startswith("-") and not line.startswith("---"):
            stats.removed += 1
            stats.removed_chars += len(line) - 1

    if stats.added == 0 and stats.removed == 0:
        return None
    return stats


def group_key_for(session_key: str, thread_number: Optional[str] = None) -> str:
    """Batch key for a session and optional thread."""
    if thread_number:
        return f"{session_key}-topic-{thread_number}"
    return session_key


def split_group_key(group_key: str) -> Tuple[str, Optional[str]]:
    """Split a batch key into (session key, thread number)."""
    match = _GROUP_KEY_RE.match(group_key)
    if match:
        return match.group(1), match.group(2)
    return group_key, None


@dataclass
class PendingEvent:
    """An extracted event awaiting delivery.

    Attributes:
        kind: Event type tag
        id: Deduplication identifier
        session_key: Base session id (thread suffix stripped)
        timestamp: Record time, or extraction time if the record had none
        data: Type-specific attributes
        thread_number: Thread suffix of the source file, if any
    """

    kind: EventKind
    id: str
    session_key: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    thread_number: Optional[str] = None

    @property
    def group_key(self) -> str:
        return group_key_for(self.session_key, self.thread_number)
