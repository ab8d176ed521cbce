"""Local JSONL audit log of extracted events.

Every extracted event is appended to ``<state_dir>/events.jsonl`` with a
summary of its session. The file is rotated by a stdlib
``RotatingFileHandler``; rotated files are named ``events.1.jsonl`` ...
``events.N.jsonl``. Records are handed to the file handler through a
``QueueHandler``, so disk writes and rotation happen on a listener thread
rather than on the event loop.
"""

import dataclasses
import json
import logging
import logging.handlers
import queue
from pathlib import Path
from typing import Any, Dict, Optional

from .events import PendingEvent
from .metadata import SessionMetadataIndex

logger = logging.getLogger(__name__)


MAX_VALUE_LENGTH = 500
TRUNCATION_MARKER = "...[truncated]"


def rotated_name(default_name: str) -> str:
    """Map ``events.jsonl.3`` to ``events.3.jsonl``."""
    path = Path(default_name)
    base, _, index = path.name.rpartition(".")
    if not index.isdigit() or not base.endswith(".jsonl"):
        return default_name
    stem = base[: -len(".jsonl")]
    return str(path.with_name(f"{stem}.{index}.jsonl"))


def truncate_values(value: Any, max_length: int = MAX_VALUE_LENGTH) -> Any:
    """Recursively cut long strings so one log line stays small."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    if isinstance(value, str):
        if len(value) > max_length:
            return value[:max_length] + TRUNCATION_MARKER
        return value
    if isinstance(value, dict):
        return {str(k): truncate_values(v, max_length) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [truncate_values(item, max_length) for item in value]
    return value


class EventLog:
    """Appends extracted events to a rotating JSONL file."""

    def __init__(
        self,
        path: Path,
        metadata: SessionMetadataIndex,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ):
        """Open the event log.

        Args:
            path: Log file location (its directory is created)
            metadata: Source of session summaries
            max_bytes: Rotation threshold
            backup_count: Number of rotated files kept
        """
        self._path = Path(path)
        self._metadata = metadata
        self._path.parent.mkdir(parents=True, exist_ok=True)

        self._handler = logging.handlers.RotatingFileHandler(
            self._path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        self._handler.namer = rotated_name
        self._handler.setFormatter(logging.Formatter("%(message)s"))

        records: "queue.Queue[logging.LogRecord]" = queue.Queue()
        self._queue_handler = logging.handlers.QueueHandler(records)
        self._listener: Optional[logging.handlers.QueueListener] = logging.handlers.QueueListener(
            records, self._handler
        )
        self._listener.start()

        self._logger = logging.getLogger(f"{__name__}.{self._path}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(self._queue_handler)

    @property
    def path(self) -> Path:
        return self._path

    def session_info(self, event: PendingEvent) -> Dict[str, Any]:
        """Summary of the event's session."""
        meta = self._metadata.get(event.session_key)
        info = self._metadata.project(event.session_key)

        tokens: Optional[Dict[str, int]] = None
        if meta is not None and meta.used_tokens and meta.context_tokens:
            tokens = {
                "used": meta.used_tokens,
                "context": meta.context_tokens,
                "percent": info.token_percent or 0,
            }

        return {
            "id": event.session_key,
            "name": info.name,
            "model": meta.model if meta is not None else "",
            "chatType": info.chat_type,
            "surface": info.surface,
            "groupId": info.group_id,
            "cwd": info.cwd,
            "tokens": tokens,
            "thinkingLevel": info.thinking_level or "off",
            "isSubagent": info.is_subagent,
            "threadNumber": event.thread_number,
            "agentName": info.agent_name,
        }

    def record(self, event: PendingEvent) -> None:
        """Append one event."""
        entry = {
            "id": event.id,
            "timestamp": event.timestamp.isoformat(),
            "type": event.kind.value,
            "session": self.session_info(event),
            "data": truncate_values(event.data),
        }
        try:
            line = json.dumps(entry, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize event %s: %s", event.id, e)
            return
        self._logger.info(line)

    def close(self) -> None:
        """Write out queued entries and close the file."""
        self._logger.removeHandler(self._queue_handler)
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        self._handler.close()
