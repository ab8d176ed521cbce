"""Shared pytest fixtures for session-audit tests."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from session_audit.config import AuditConfig
from session_audit.realtime.events import PendingEvent


# Sample ids for consistent testing
SAMPLE_SESSION_ID = "0a1b2c3d-0000-4000-8000-000000000001"
SAMPLE_SESSION_ID_2 = "0a1b2c3d-0000-4000-8000-000000000002"
SAMPLE_TOOL_CALL_ID = "call_01ABC123"
SAMPLE_AGENT = "main"

BASE_TIME = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


def iso(offset_seconds: float = 0) -> str:
    """ISO timestamp relative to BASE_TIME."""
    ts = BASE_TIME + timedelta(seconds=offset_seconds)
    return ts.isoformat().replace("+00:00", "Z")


class RecordFactory:
    """Builds raw session log lines as parsed JSON objects."""

    def session(self, cwd: str = "/home/user/project", record_id: str = "s1") -> Dict[str, Any]:
        return {"type": "session", "id": record_id, "cwd": cwd, "timestamp": iso()}

    def user(self, content: Any = "Hello there", record_id: str = "u1", at: float = 0) -> Dict[str, Any]:
        return {
            "type": "message",
            "id": record_id,
            "timestamp": iso(at),
            "message": {"role": "user", "content": content},
        }

    def assistant(
        self,
        content: Optional[List[Dict[str, Any]]] = None,
        record_id: str = "a1",
        stop_reason: str = "stop",
        total_tokens: Optional[int] = None,
        at: float = 0,
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "role": "assistant",
            "content": content if content is not None else [{"type": "text", "text": "Done."}],
            "stopReason": stop_reason,
        }
        if total_tokens is not None:
            message["usage"] = {"totalTokens": total_tokens}
        return {"type": "message", "id": record_id, "timestamp": iso(at), "message": message}

    def tool_call(
        self,
        name: str = "exec",
        arguments: Optional[Dict[str, Any]] = None,
        call_id: str = SAMPLE_TOOL_CALL_ID,
        record_id: str = "a2",
        at: float = 0,
    ) -> Dict[str, Any]:
        item = {
            "type": "toolCall",
            "id": call_id,
            "name": name,
            "arguments": arguments if arguments is not None else {"command": "ls"},
        }
        return self.assistant([item], record_id=record_id, stop_reason="toolUse", at=at)

    def tool_result(
        self,
        call_id: str = SAMPLE_TOOL_CALL_ID,
        record_id: str = "r1",
        is_error: bool = False,
        diff: Optional[str] = None,
        duration_ms: Optional[float] = None,
        at: float = 0,
    ) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if diff is not None:
            details["diff"] = diff
        if duration_ms is not None:
            details["durationMs"] = duration_ms
        return {
            "type": "message",
            "id": record_id,
            "timestamp": iso(at),
            "message": {
                "role": "toolResult",
                "toolCallId": call_id,
                "isError": is_error,
                "details": details,
            },
        }

    def model_change(self, model_id: str, record_id: str = "m1", provider: str = "anthropic") -> Dict[str, Any]:
        return {
            "type": "model_change",
            "id": record_id,
            "timestamp": iso(),
            "modelId": model_id,
            "provider": provider,
        }


class RecordingBatcher:
    """Stand-in for EventBatcher that keeps events in memory."""

    def __init__(self):
        self.events: List[PendingEvent] = []
        self.pending: Dict[str, List[PendingEvent]] = {}

    def add_event(self, event: PendingEvent) -> None:
        self.events.append(event)
        self.pending.setdefault(event.group_key, []).append(event)

    def find_pending(self, group_key: str, event_id: str) -> Optional[PendingEvent]:
        for event in self.pending.get(group_key, []):
            if event.id == event_id:
                return event
        return None

    def flush(self, group_key: str) -> List[PendingEvent]:
        return self.pending.pop(group_key, [])


def to_line(entry: Dict[str, Any]) -> str:
    """Serialize one entry as a JSONL line."""
    return json.dumps(entry) + "\n"


@pytest.fixture
def records() -> RecordFactory:
    """Factory for raw session log entries."""
    return RecordFactory()


@pytest.fixture
def recording_batcher() -> RecordingBatcher:
    """In-memory batcher that records added events."""
    return RecordingBatcher()


@pytest.fixture
def session_id() -> str:
    """Return the sample session id."""
    return SAMPLE_SESSION_ID


@pytest.fixture
def audit_config(tmp_path) -> AuditConfig:
    """Fallback-only configuration rooted in a temporary directory."""
    return AuditConfig(
        agents_dir=tmp_path / "agents",
        state_dir=tmp_path / "state",
        channel="discord",
        target_id="1234",
        send_method="fallback",
        rate_limit_ms=1,
        event_log_enabled=False,
    )


@pytest.fixture
def sessions_dir(audit_config) -> Path:
    """Create and return ``agents/main/sessions``."""
    path = audit_config.agents_dir / SAMPLE_AGENT / "sessions"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def session_file(sessions_dir) -> Path:
    """Path of the sample session's log file (not yet created)."""
    return sessions_dir / f"{SAMPLE_SESSION_ID}.jsonl"


@pytest.fixture
def append_lines():
    """Append entries to a JSONL file, creating it if needed."""
    def _append(path: Path, *entries: Dict[str, Any]) -> None:
        with open(path, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(to_line(entry))
    return _append
