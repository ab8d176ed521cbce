"""Realtime audit pipeline for agent session logs.

Components, leaf first:

- OffsetStore: byte offsets and the bounded seen-id set, persisted atomically
- SessionMetadataIndex: per-session project/model/routing metadata
- LogTailer + EventExtractor: incremental reads and event extraction
- EventBatcher: per (session, thread) batches with size and inactivity triggers
- MessageFormatter: bounded-length rendering with a throttled header
- DeliveryManager: webhook with 429 cooldown, CLI fallback, spacing
- AuditDaemon: watchdog notifications, periodic rescans, graceful shutdown

Example usage:
    import asyncio
    from session_audit import AuditConfig
    from session_audit.realtime import AuditContext, AuditDaemon

    config = AuditConfig.load()
    config.validate()
    asyncio.run(AuditDaemon(AuditContext.build(config)).run())
"""

from .events import (
    EventKind,
    PendingEvent,
    DiffStats,
    parse_diff_stats,
    group_key_for,
    split_group_key,
)
from .state import AuditState, OffsetStore, PidFile
from .metadata import (
    SessionMetadata,
    SessionMetadataIndex,
    ProjectInfo,
    is_session_file,
    base_session_id,
    thread_number,
)
from .formatter import MessageFormatter, truncate_text, format_duration
from .delivery import (
    DeliveryManager,
    DeliveryOutcome,
    SendMethod,
    WebhookSender,
    WebhookResult,
    CliSender,
    TaskSupervisor,
)
from .batcher import EventBatcher
from .event_log import EventLog
from .extractor import EventExtractor, clean_user_text, extract_sender_name
from .tailer import LogTailer, offset_key
from .watcher import AuditContext, AuditDaemon, SessionFileHandler

__all__ = [
    # Events
    "EventKind",
    "PendingEvent",
    "DiffStats",
    "parse_diff_stats",
    "group_key_for",
    "split_group_key",
    # State
    "AuditState",
    "OffsetStore",
    "PidFile",
    # Metadata
    "SessionMetadata",
    "SessionMetadataIndex",
    "ProjectInfo",
    "is_session_file",
    "base_session_id",
    "thread_number",
    # Formatting
    "MessageFormatter",
    "truncate_text",
    "format_duration",
    # Delivery
    "DeliveryManager",
    "DeliveryOutcome",
    "SendMethod",
    "WebhookSender",
    "WebhookResult",
    "CliSender",
    "TaskSupervisor",
    # Pipeline
    "EventBatcher",
    "EventLog",
    "EventExtractor",
    "clean_user_text",
    "extract_sender_name",
    "LogTailer",
    "offset_key",
    # Daemon
    "AuditContext",
    "AuditDaemon",
    "SessionFileHandler",
]
