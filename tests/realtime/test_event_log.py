"""Tests for session_audit.realtime.event_log module."""

import json
import logging.handlers
import threading
from datetime import datetime, timezone

import pytest

from session_audit.realtime.event_log import EventLog, rotated_name, truncate_values
from session_audit.realtime.events import DiffStats, EventKind, PendingEvent
from session_audit.realtime.metadata import SessionMetadataIndex


SESSION = "0a1b2c3d-0000-4000-8000-000000000001"


def make_event(event_id="call_1", data=None, thread=None):
    return PendingEvent(
        kind=EventKind.TOOL_CALL,
        id=event_id,
        session_key=SESSION,
        timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        data=data if data is not None else {"name": "exec", "args": {"command": "ls"}},
        thread_number=thread,
    )


def read_entries(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def metadata():
    index = SessionMetadataIndex()
    index.apply_index_snapshot({
        "agent:main:discord:channel:42": {"sessionId": SESSION, "contextTokens": 100000},
    }, agent_name="main")
    return index


class TestHelpers:
    def test_rotated_name(self):
        """Rotated files keep the .jsonl extension."""
        assert rotated_name("/x/events.jsonl.3") == "/x/events.3.jsonl"
        assert rotated_name("/x/other.log.1") == "/x/other.log.1"
        assert rotated_name("/x/events.jsonl") == "/x/events.jsonl"

    def test_truncate_values(self):
        """Long strings are cut recursively."""
        value = truncate_values({"a": "x" * 600, "b": ["y" * 10, {"c": "z" * 501}], "n": 5}, 500)

        assert value["a"] == "x" * 500 + "...[truncated]"
        assert value["b"][0] == "y" * 10
        assert value["b"][1]["c"].endswith("...[truncated]")
        assert value["n"] == 5

    def test_truncate_dataclass(self):
        assert truncate_values(DiffStats(added=1)) == {
            "added": 1, "removed": 0, "added_chars": 0, "removed_chars": 0,
        }


class TestEventLog:
    """Test event log output and rotation."""

    def test_record_entry(self, tmp_path, metadata):
        """Each event becomes one JSON line with a session summary."""
        path = tmp_path / "logs" / "events.jsonl"
        log = EventLog(path, metadata)

        log.record(make_event(thread="5"))
        log.close()

        [entry] = read_entries(path)
        assert entry["id"] == "call_1"
        assert entry["type"] == "toolCall"
        assert entry["timestamp"] == "2024-01-15T10:30:00+00:00"
        assert entry["data"]["args"] == {"command": "ls"}
        session = entry["session"]
        assert session["id"] == SESSION
        assert session["chatType"] == "channel"
        assert session["surface"] == "discord"
        assert session["groupId"] == "42"
        assert session["thinkingLevel"] == "off"
        assert session["threadNumber"] == "5"
        assert session["agentName"] == "main"
        assert session["tokens"] is None

    def test_token_summary(self, tmp_path, metadata):
        """Token usage is included when both counts are known."""
        metadata.get(SESSION).used_tokens = 25000
        path = tmp_path / "events.jsonl"
        log = EventLog(path, metadata)

        log.record(make_event())
        log.close()

        assert read_entries(path)[0]["session"]["tokens"] == {
            "used": 25000, "context": 100000, "percent": 25,
        }

    def test_file_created_lazily(self, tmp_path, metadata):
        """Opening the log does not create the file."""
        path = tmp_path / "events.jsonl"
        log = EventLog(path, metadata)
        log.close()

        assert not path.exists()

    def test_rotation_naming(self, tmp_path, metadata):
        """Rotated logs are named events.N.jsonl and capped."""
        path = tmp_path / "events.jsonl"
        log = EventLog(path, metadata, max_bytes=600, backup_count=2)

        for i in range(30):
            log.record(make_event(event_id=f"call_{i}"))
        log.close()

        assert path.exists()
        assert (tmp_path / "events.1.jsonl").exists()
        assert (tmp_path / "events.2.jsonl").exists()
        assert not (tmp_path / "events.3.jsonl").exists()
        assert not (tmp_path / "events.jsonl.1").exists()
        for entry in read_entries(tmp_path / "events.1.jsonl"):
            assert entry["type"] == "toolCall"

    def test_written_off_calling_thread(self, tmp_path, metadata, monkeypatch):
        """File writes happen on the listener thread, not the recording one."""
        writers = []
        real_emit = logging.handlers.RotatingFileHandler.emit

        def tracking_emit(handler, record):
            writers.append(threading.get_ident())
            real_emit(handler, record)

        monkeypatch.setattr(logging.handlers.RotatingFileHandler, "emit", tracking_emit)
        path = tmp_path / "events.jsonl"
        log = EventLog(path, metadata)

        log.record(make_event(event_id="call_a"))
        log.record(make_event(event_id="call_b"))
        log.close()

        assert [entry["id"] for entry in read_entries(path)] == ["call_a", "call_b"]
        assert len(writers) == 2
        assert threading.get_ident() not in writers

    def test_close_twice(self, tmp_path, metadata):
        log = EventLog(tmp_path / "events.jsonl", metadata)
        log.close()
        log.close()
