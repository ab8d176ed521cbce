"""Audit stream for agent session logs.

Tails the append-only JSONL session logs written by agents, extracts
user-visible events (tool calls, user messages, completions, model
changes, ...), batches them per session and thread, and delivers
compact text messages to a chat channel under a strict rate budget.

Example usage:
    import asyncio
    from session_audit import AuditConfig
    from session_audit.realtime import AuditContext, AuditDaemon

    config = AuditConfig.load()
    config.validate()

    daemon = AuditDaemon(AuditContext.build(config))
    asyncio.run(daemon.run())  # Runs until SIGINT/SIGTERM
"""

from .config import AuditConfig, ConfigError
from .records import (
    LogRecord,
    SessionRecord,
    ThinkingLevelRecord,
    ModelChangeRecord,
    ModelSnapshotRecord,
    PromptErrorRecord,
    ErrorRecord,
    CompactionRecord,
    UserMessageRecord,
    AssistantMessageRecord,
    ToolResultRecord,
    UnknownRecord,
    TextItem,
    ThinkingItem,
    ToolCallItem,
    ImageItem,
    classify_record,
    parse_timestamp,
)

__version__ = "0.1.0"

__all__ = [
    "AuditConfig",
    "ConfigError",
    # Records
    "LogRecord",
    "SessionRecord",
    "ThinkingLevelRecord",
    "ModelChangeRecord",
    "ModelSnapshotRecord",
    "PromptErrorRecord",
    "ErrorRecord",
    "CompactionRecord",
    "UserMessageRecord",
    "AssistantMessageRecord",
    "ToolResultRecord",
    "UnknownRecord",
    # Content items
    "TextItem",
    "ThinkingItem",
    "ToolCallItem",
    "ImageItem",
    # Functions
    "classify_record",
    "parse_timestamp",
]
