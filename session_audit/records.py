"""Typed records for agent session log lines.

Each line of a session log is a JSON object discriminated by a ``type``
tag and, for chat messages, by ``message.role``. ``classify_record``
turns one parsed line into exactly one of the record variants below;
anything not handled becomes an :class:`UnknownRecord`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


# Content items

@dataclass(frozen=True)
class TextItem:
    """Plain text segment of a message."""
    text: str


@dataclass(frozen=True)
class ThinkingItem:
    """Reasoning segment of an assistant message."""
    thinking: str


@dataclass(frozen=True)
class ToolCallItem:
    """Tool invocation requested by the assistant."""
    id: str                     # May be empty; callers derive a fallback id
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class ImageItem:
    """Image attached to a message."""
    mime_type: str
    source_type: str = ""       # "base64" or "url"
    source_data: str = ""
    source_url: str = ""


ContentItem = Union[TextItem, ThinkingItem, ToolCallItem, ImageItem]


# Records

@dataclass(frozen=True)
class LogRecord:
    """Fields shared by every record variant.

    Attributes:
        record_id: The line's ``id`` field, if present
        timestamp: Parsed ``timestamp``; None if absent or unparsable
        usage_total_tokens: ``message.usage.totalTokens``, if present
        raw: The parsed JSON object
    """

    record_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    usage_total_tokens: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SessionRecord(LogRecord):
    cwd: str = ""


@dataclass(frozen=True)
class ThinkingLevelRecord(LogRecord):
    level: str = "unknown"


@dataclass(frozen=True)
class ModelChangeRecord(LogRecord):
    model_id: str = ""
    provider: str = ""


@dataclass(frozen=True)
class ModelSnapshotRecord(LogRecord):
    """``custom`` record with customType ``model-snapshot``."""
    model_id: str = ""


@dataclass(frozen=True)
class PromptErrorRecord(LogRecord):
    """``custom`` record with customType ``openclaw:prompt-error``."""
    error: str = ""
    model: str = ""
    provider: str = ""


@dataclass(frozen=True)
class ErrorRecord(LogRecord):
    message: str = ""


@dataclass(frozen=True)
class CompactionRecord(LogRecord):
    tokens_before: Optional[int] = None
    summary: str = ""


@dataclass(frozen=True)
class UserMessageRecord(LogRecord):
    content: List[ContentItem] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Text of the first text segment."""
        for item in self.content:
            if isinstance(item, TextItem):
                return item.text
        return ""

    @property
    def images(self) -> List[ImageItem]:
        return [item for item in self.content if isinstance(item, ImageItem)]


@dataclass(frozen=True)
class AssistantMessageRecord(LogRecord):
    content: List[ContentItem] = field(default_factory=list)
    stop_reason: str = ""

    @property
    def text(self) -> str:
        """Text of the first text segment."""
        for item in self.content:
            if isinstance(item, TextItem):
                return item.text
        return ""

    @property
    def is_complete(self) -> bool:
        """True when the assistant finished its turn."""
        return self.stop_reason in ("stop", "end_turn")


@dataclass(frozen=True)
class ToolResultRecord(LogRecord):
    tool_call_id: str = ""
    is_error: bool = False
    diff: Optional[str] = None
    duration_ms: Optional[float] = None


@dataclass(frozen=True)
class UnknownRecord(LogRecord):
    """Any line that carries nothing the audit stream uses."""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a record timestamp (always UTC-aware).

    Accepts ISO-8601 strings and epoch milliseconds.

    Returns:
        Parsed datetime, or None if absent or unparsable
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value:
        return None

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def parse_content(content: Any) -> List[ContentItem]:
    """Parse a message ``content`` field into content items.

    A bare string is treated as a single text item; unknown item types
    are skipped.
    """
    if isinstance(content, str):
        return [TextItem(text=content)]
    if not isinstance(content, list):
        return []

    items: List[ContentItem] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")

        if item_type == "text":
            items.append(TextItem(text=_str(item.get("text"))))
        elif item_type == "thinking":
            items.append(ThinkingItem(thinking=_str(item.get("thinking"))))
        elif item_type == "toolCall":
            arguments = item.get("arguments")
            items.append(
                ToolCallItem(
                    id=_str(item.get("id")).strip(),
                    name=_str(item.get("name")),
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )
        elif item_type == "image":
            source = item.get("source")
            source = source if isinstance(source, dict) else {}
            items.append(
                ImageItem(
                    mime_type=_str(item.get("mimeType") or source.get("media_type")),
                    source_type=_str(source.get("type")),
                    source_data=_str(source.get("data")),
                    source_url=_str(source.get("url")),
                )
            )
    return items


def classify_record(raw: Any) -> LogRecord:
    """Classify one parsed log line into a record variant.

    Args:
        raw: Parsed JSON value of one line

    Returns:
        The matching record; UnknownRecord for anything unhandled
    """
    if not isinstance(raw, dict):
        return UnknownRecord()

    message = raw.get("message")
    message = message if isinstance(message, dict) else {}
    usage = message.get("usage")
    usage_tokens = (
        _int_or_none(usage.get("totalTokens")) if isinstance(usage, dict) else None
    )

    common: Dict[str, Any] = {
        "record_id": _str(raw.get("id")) or None,
        "timestamp": parse_timestamp(raw.get("timestamp")),
        "usage_total_tokens": usage_tokens or None,
        "raw": raw,
    }

    record_type = raw.get("type")

    if record_type == "session":
        return SessionRecord(cwd=_str(raw.get("cwd")), **common)

    if record_type == "thinking_level_change":
        return ThinkingLevelRecord(
            level=_str(raw.get("thinkingLevel")) or "unknown", **common
        )

    if record_type == "model_change" and raw.get("modelId"):
        return ModelChangeRecord(
            model_id=_str(raw.get("modelId")),
            provider=_str(raw.get("provider")),
            **common,
        )

    if record_type == "custom":
        data = raw.get("data")
        data = data if isinstance(data, dict) else {}
        custom_type = raw.get("customType")
        if custom_type == "model-snapshot" and data.get("modelId"):
            return ModelSnapshotRecord(model_id=_str(data.get("modelId")), **common)
        if custom_type == "openclaw:prompt-error":
            return PromptErrorRecord(
                error=_str(data.get("error")),
                model=_str(data.get("model")),
                provider=_str(data.get("provider")),
                **common,
            )
        return UnknownRecord(**common)

    if record_type == "error" and (raw.get("error") or raw.get("message")):
        error = raw.get("error") or raw.get("message")
        if isinstance(error, dict):
            error = error.get("message") or error
        return ErrorRecord(message=_str(error), **common)

    if record_type == "compaction":
        return CompactionRecord(
            tokens_before=_int_or_none(raw.get("tokensBefore")),
            summary=_str(raw.get("summary")),
            **common,
        )

    role = message.get("role")

    if role == "user":
        return UserMessageRecord(content=parse_content(message.get("content")), **common)

    if role == "assistant":
        return AssistantMessageRecord(
            content=parse_content(message.get("content")),
            stop_reason=_str(message.get("stopReason")),
            **common,
        )

    if role == "toolResult" and message.get("toolCallId"):
        details = message.get("details")
        details = details if isinstance(details, dict) else {}
        diff = details.get("diff")
        duration = details.get("durationMs")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            duration = None
        return ToolResultRecord(
            tool_call_id=_str(message.get("toolCallId")).strip(),
            is_error=message.get("isError") is True,
            diff=diff if isinstance(diff, str) and diff else None,
            duration_ms=duration,
            **common,
        )

    return UnknownRecord(**common)
