"""Event extraction from classified log records.

Turns each record into zero or more :class:`PendingEvent` objects,
updates session metadata, and merges tool results into the still-pending
tool-call events they answer. Every event id passes through the
OffsetStore's seen-id set first, so reprocessing the same line (after a
restart or from an overlapping rescan) never emits it twice.
"""

import hashlib
import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..records import (
    AssistantMessageRecord,
    CompactionRecord,
    ContentItem,
    ErrorRecord,
    ImageItem,
    LogRecord,
    ModelChangeRecord,
    ModelSnapshotRecord,
    PromptErrorRecord,
    TextItem,
    ThinkingItem,
    ThinkingLevelRecord,
    ToolCallItem,
    ToolResultRecord,
    UserMessageRecord,
)
from .batcher import EventBatcher
from .event_log import EventLog
from .events import EventKind, PendingEvent, group_key_for, parse_diff_stats
from .metadata import SessionMetadataIndex
from .state import OffsetStore

logger = logging.getLogger(__name__)


METADATA_MARKER = "Conversation info (untrusted metadata)"
PLACEHOLDER_TEXT = "...."

_USER_TEXT_RE = re.compile(r"(?:\[Image\]\s*)?User text:\s*([\s\S]+)")
_SENDER_RE = re.compile(r'"(?:label|name|username)":\s*"([^"]+)"')

_DIFF_TOOLS = ("edit", "write")


def clean_user_text(text: str) -> str:
    """Extract the human-authored part of a chat-platform envelope.

    Returns the text after an explicit ``User text:`` marker, or the
    last fenced part of a message carrying the metadata marker phrase.
    Returns "" if nothing meaningful remains.
    """
    match = _USER_TEXT_RE.search(text)
    if match:
        return match.group(1).strip()

    if METADATA_MARKER not in text:
        return text.strip()

    parts = text.split("```")
    if len(parts) < 2:
        return ""
    last = parts[-1].strip()
    if last and "metadata" not in last and last != PLACEHOLDER_TEXT and len(last) > 5:
        return last
    return ""


def extract_sender_name(content: Sequence[ContentItem]) -> str:
    """Sender label from the envelope metadata, defaulting to "User"."""
    for item in content:
        if isinstance(item, TextItem):
            match = _SENDER_RE.search(item.text)
            if match:
                return match.group(1)
    return "User"


def describe_image(image: ImageItem) -> str:
    """Short descriptor of an image source."""
    if image.source_type == "base64":
        return f"base64:{image.source_data[:20]}..."
    return image.source_url


def image_metadata(images: Sequence[ImageItem]) -> List[str]:
    meta: List[str] = []
    for image in images:
        if image.mime_type:
            meta.append(image.mime_type)
        if image.source_type:
            meta.append(f"source:{image.source_type}")
    return meta


def tool_call_id(item: ToolCallItem) -> str:
    """Explicit call id, or a composite of name and truncated arguments."""
    if item.id:
        return item.id
    args = json.dumps(item.arguments, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"{item.name}:{args[:100]}"


def record_fingerprint(record: LogRecord) -> str:
    """Stable id for records that carry none."""
    payload = json.dumps(record.raw, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]


@dataclass
class ToolCallInfo:
    """Where and when a tool call was emitted."""

    timestamp: datetime
    group_key: str


class EventExtractor:
    """Extracts events from records and routes them to the batcher."""

    def __init__(
        self,
        store: OffsetStore,
        metadata: SessionMetadataIndex,
        batcher: EventBatcher,
        event_log: Optional[EventLog] = None,
        max_tool_calls: int = 5000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the extractor.

        Args:
            store: Dedup set owner
            metadata: Session metadata to update
            batcher: Receives new events; searched for tool-result merges
            event_log: Optional audit log of extracted events
            max_tool_calls: Capacity of the call-id -> call info map
            clock: Time source for records without a timestamp
        """
        self._store = store
        self._metadata = metadata
        self._batcher = batcher
        self._event_log = event_log
        self._max_tool_calls = max_tool_calls
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tool_calls: "OrderedDict[str, ToolCallInfo]" = OrderedDict()

    def process(
        self,
        record: LogRecord,
        session_id: str,
        thread_number: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> List[PendingEvent]:
        """Apply one record.

        Args:
            record: Classified log record
            session_id: Base session id of the source file
            thread_number: Thread suffix of the source file
            agent_name: Agent namespace of the source file

        Returns:
            Newly emitted events (already handed to the batcher)
        """
        meta = self._metadata.get(session_id)
        previous_model = meta.model if meta is not None else ""
        self._metadata.apply_record(session_id, record, agent_name)

        if isinstance(record, ToolResultRecord):
            self._merge_tool_result(record)
            return []

        timestamp = record.timestamp or self._clock()
        emitted: List[PendingEvent] = []
        for event_id, kind, data in self._candidates(record, previous_model):
            if self._store.has_seen(event_id):
                continue
            event = PendingEvent(
                kind=kind,
                id=event_id,
                session_key=session_id,
                timestamp=timestamp,
                data=data,
                thread_number=thread_number,
            )
            if kind is EventKind.TOOL_CALL:
                self._remember_tool_call(event)
            self._batcher.add_event(event)
            if self._event_log is not None:
                self._event_log.record(event)
            emitted.append(event)
        return emitted

    def _candidates(
        self, record: LogRecord, previous_model: str
    ) -> List[Tuple[str, EventKind, Dict[str, Any]]]:
        """(id, kind, data) for every event the record may produce."""
        rid = record.record_id or record_fingerprint(record)

        if isinstance(record, ThinkingLevelRecord):
            return [(f"thinking_level:{rid}", EventKind.THINKING_LEVEL, {"level": record.level})]

        if isinstance(record, ModelChangeRecord):
            return [(
                f"model_change:{rid}",
                EventKind.MODEL_CHANGE,
                {"old_model": previous_model, "new_model": record.model_id},
            )]

        if isinstance(record, ModelSnapshotRecord):
            # A snapshot only announces a change; the first one just seeds the model
            if not previous_model or previous_model == record.model_id:
                return []
            return [(
                f"model_snapshot:{rid}",
                EventKind.MODEL_CHANGE,
                {"old_model": previous_model, "new_model": record.model_id},
            )]

        if isinstance(record, PromptErrorRecord):
            return [(
                f"prompt_error:{rid}",
                EventKind.PROMPT_ERROR,
                {"error": record.error, "model": record.model, "provider": record.provider},
            )]

        if isinstance(record, ErrorRecord):
            return [(
                f"error:{rid}:{record.message[:50]}",
                EventKind.ERROR,
                {"error": record.message},
            )]

        if isinstance(record, CompactionRecord):
            return [(
                f"compaction:{rid}",
                EventKind.COMPACTION,
                {"tokens_before": record.tokens_before, "summary": record.summary},
            )]

        if isinstance(record, UserMessageRecord):
            return self._user_candidates(record, rid)

        if isinstance(record, AssistantMessageRecord):
            return self._assistant_candidates(record, rid)

        return []

    def _user_candidates(
        self, record: UserMessageRecord, rid: str
    ) -> List[Tuple[str, EventKind, Dict[str, Any]]]:
        candidates = []
        images = record.images
        text = clean_user_text(record.text)

        if text and text != PLACEHOLDER_TEXT:
            candidates.append((
                f"user_message:{rid}",
                EventKind.USER_MESSAGE,
                {
                    "sender": extract_sender_name(record.content),
                    "preview": text,
                    "has_image": bool(images),
                    "image_meta": image_metadata(images),
                },
            ))
        else:
            logger.debug("Suppressed metadata-only user message %s", rid)

        for index, image in enumerate(images):
            candidates.append((
                f"image:{rid}:{index}:{image.mime_type or 'unknown'}",
                EventKind.IMAGE,
                {"mime_type": image.mime_type, "source": describe_image(image)},
            ))
        return candidates

    def _assistant_candidates(
        self, record: AssistantMessageRecord, rid: str
    ) -> List[Tuple[str, EventKind, Dict[str, Any]]]:
        candidates = []
        for item in record.content:
            if isinstance(item, ThinkingItem) and item.thinking:
                candidates.append((
                    f"thinking:{rid}:{item.thinking[:50]}",
                    EventKind.THINKING,
                    {"preview": item.thinking},
                ))
            elif isinstance(item, ToolCallItem):
                candidates.append((
                    tool_call_id(item),
                    EventKind.TOOL_CALL,
                    {
                        "name": item.name,
                        "args": item.arguments,
                        "is_error": False,
                        "duration_ms": None,
                    },
                ))

        if record.is_complete:
            candidates.append((
                f"complete:{rid}",
                EventKind.ASSISTANT_COMPLETE,
                {
                    "tokens": record.usage_total_tokens,
                    "stop_reason": record.stop_reason,
                    "message_preview": record.text,
                },
            ))
        return candidates

    def _remember_tool_call(self, event: PendingEvent) -> None:
        self._tool_calls[event.id] = ToolCallInfo(event.timestamp, event.group_key)
        self._tool_calls.move_to_end(event.id)
        while len(self._tool_calls) > self._max_tool_calls:
            self._tool_calls.popitem(last=False)

    def _merge_tool_result(self, record: ToolResultRecord) -> None:
        """Attach result data to the pending call event, at most once."""
        info = self._tool_calls.pop(record.tool_call_id, None)
        if info is None:
            return

        event = self._batcher.find_pending(info.group_key, record.tool_call_id)
        if event is None or event.kind is not EventKind.TOOL_CALL:
            logger.debug("Tool call %s already flushed", record.tool_call_id)
            return

        data = event.data
        data["is_error"] = record.is_error

        if record.diff and data.get("name") in _DIFF_TOOLS:
            data["diff_stats"] = parse_diff_stats(record.diff)

        if record.duration_ms is not None:
            data["duration_ms"] = record.duration_ms
        elif record.timestamp is not None:
            elapsed = (record.timestamp - info.timestamp).total_seconds() * 1000
            if elapsed > 0:
                data["duration_ms"] = round(elapsed)
