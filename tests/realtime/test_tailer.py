"""Tests for session_audit.realtime.tailer module."""

import asyncio
import json
import logging
import threading

import pytest

from session_audit.realtime.extractor import EventExtractor
from session_audit.realtime.metadata import SessionMetadataIndex
from session_audit.realtime.state import OffsetStore
from session_audit.realtime import tailer as tailer_module
from session_audit.realtime.tailer import LogTailer, offset_key


@pytest.fixture
def store(audit_config):
    return OffsetStore(audit_config.state_file)


@pytest.fixture
def metadata():
    return SessionMetadataIndex()


@pytest.fixture
def tailer(audit_config, store, metadata, recording_batcher):
    extractor = EventExtractor(store, metadata, recording_batcher)
    return LogTailer(audit_config, store, metadata, extractor)


def file_key(path):
    return offset_key("main", path.name)


class TestOffsetKey:
    def test_namespaced_by_agent(self):
        assert offset_key("main", "a.jsonl") == "main:a.jsonl"


class TestTail:
    """Test incremental tailing."""

    @pytest.mark.asyncio
    async def test_new_file_starts_at_end(self, tailer, store, records, session_file, append_lines):
        """Existing history of a newly seen file is skipped."""
        append_lines(session_file, records.session(), records.assistant(record_id="old"))

        emitted = await tailer.tail(session_file, "main")

        assert emitted == 0
        assert store.get_offset(file_key(session_file)) == session_file.stat().st_size

    @pytest.mark.asyncio
    async def test_appended_lines_processed(
        self, tailer, store, records, session_file, append_lines, recording_batcher,
    ):
        """Lines appended after the first pass are emitted."""
        append_lines(session_file, records.session())
        await tailer.tail(session_file, "main")

        append_lines(session_file, records.assistant(record_id="new"))
        emitted = await tailer.tail(session_file, "main")

        assert emitted == 1
        assert recording_batcher.events[0].id == "complete:new"
        assert store.get_offset(file_key(session_file)) == session_file.stat().st_size

    @pytest.mark.asyncio
    async def test_process_all_reads_history(
        self, audit_config, tailer, records, session_file, append_lines, recording_batcher,
    ):
        """With debug_process_all new files are read from the start."""
        audit_config.debug_process_all = True
        append_lines(session_file, records.assistant(record_id="a1"), records.assistant(record_id="a2"))

        assert await tailer.tail(session_file, "main") == 2
        assert [e.id for e in recording_batcher.events] == ["complete:a1", "complete:a2"]

    @pytest.mark.asyncio
    async def test_partial_line_left_for_next_pass(
        self, tailer, store, records, session_file, append_lines,
    ):
        """An unterminated last line is not consumed."""
        append_lines(session_file, records.session())
        await tailer.tail(session_file, "main")
        start = store.get_offset(file_key(session_file))

        line = json.dumps(records.assistant(record_id="p1"))
        with open(session_file, "a") as f:
            f.write(line[:20])

        assert await tailer.tail(session_file, "main") == 0
        assert store.get_offset(file_key(session_file)) == start

        with open(session_file, "a") as f:
            f.write(line[20:] + "\n")

        assert await tailer.tail(session_file, "main") == 1

    @pytest.mark.asyncio
    async def test_malformed_line_skipped(
        self, tailer, store, records, session_file, append_lines, caplog,
    ):
        """Invalid JSON is logged and skipped; later lines still count."""
        append_lines(session_file, records.session())
        await tailer.tail(session_file, "main")

        with open(session_file, "a") as f:
            f.write("{not json}\n")
        append_lines(session_file, records.assistant(record_id="after"))

        with caplog.at_level(logging.WARNING):
            emitted = await tailer.tail(session_file, "main")

        assert emitted == 1
        assert "malformed" in caplog.text
        assert store.get_offset(file_key(session_file)) == session_file.stat().st_size

    @pytest.mark.asyncio
    async def test_oversized_file_skipped(self, audit_config, tailer, store, records, session_file, append_lines):
        """Files above max_file_size are not tailed."""
        audit_config.max_file_size = 10
        append_lines(session_file, records.session())

        assert await tailer.tail(session_file, "main") == 0
        assert store.get_offset(file_key(session_file)) is None

    @pytest.mark.asyncio
    async def test_truncated_file_yields_nothing(
        self, audit_config, tailer, store, records, session_file, append_lines,
    ):
        """Offsets never move back when a file shrinks."""
        audit_config.debug_process_all = True
        append_lines(session_file, records.assistant(record_id="a1"), records.assistant(record_id="a2"))
        await tailer.tail(session_file, "main")
        offset = store.get_offset(file_key(session_file))

        session_file.write_text("")
        append_lines(session_file, records.assistant(record_id="a3"))

        assert await tailer.tail(session_file, "main") == 0
        assert store.get_offset(file_key(session_file)) == offset

    @pytest.mark.asyncio
    async def test_non_session_file_ignored(self, tailer, sessions_dir):
        path = sessions_dir / "sessions.json"
        path.write_text("{}")

        assert await tailer.tail(path, "main") == 0

    @pytest.mark.asyncio
    async def test_missing_file(self, tailer, session_file):
        assert await tailer.tail(session_file, "main") == 0

    @pytest.mark.asyncio
    async def test_concurrent_tails_serialized(
        self, audit_config, tailer, records, session_file, append_lines, recording_batcher,
    ):
        """Overlapping tails of one file never emit a line twice."""
        audit_config.debug_process_all = True
        append_lines(session_file, *[records.assistant(record_id=f"a{i}") for i in range(5)])

        results = await asyncio.gather(
            tailer.tail(session_file, "main"),
            tailer.tail(session_file, "main"),
        )

        assert sum(results) == 5
        assert len(recording_batcher.events) == 5
        assert not tailer.is_tailing(session_file, "main")
        assert tailer.in_flight == 0

    @pytest.mark.asyncio
    async def test_thread_file(
        self, audit_config, tailer, records, sessions_dir, append_lines, recording_batcher, session_id,
    ):
        """Thread files route events to the thread's group."""
        audit_config.debug_process_all = True
        path = sessions_dir / f"{session_id}-topic-9.jsonl"
        append_lines(path, records.assistant())

        await tailer.tail(path, "main")

        event = recording_batcher.events[0]
        assert event.session_key == session_id
        assert event.thread_number == "9"


class TestRescan:
    """Test metadata rescans."""

    @pytest.mark.asyncio
    async def test_rescan_uses_processed_prefix(
        self, audit_config, tailer, metadata, records, session_file, append_lines,
        recording_batcher, session_id,
    ):
        """A rescan rebuilds from processed lines, so new changes report the old model."""
        audit_config.debug_process_all = True
        append_lines(session_file, records.model_change("model-a", record_id="x1"))
        await tailer.tail(session_file, "main")

        append_lines(session_file, records.model_change("model-b", record_id="x2"))
        emitted = await tailer.rescan_file(session_file, "main")

        assert emitted == 1
        change = recording_batcher.events[-1]
        assert change.data == {"old_model": "model-a", "new_model": "model-b"}
        assert metadata.get(session_id).model == "model-b"

    @pytest.mark.asyncio
    async def test_rescan_new_file_reads_metadata(
        self, tailer, metadata, records, session_file, append_lines, session_id, recording_batcher,
    ):
        """A newly seen file contributes metadata without emitting history."""
        append_lines(
            session_file,
            records.session("/home/u/webapp"),
            records.model_change("model-a"),
        )

        emitted = await tailer.rescan_file(session_file, "main")

        assert emitted == 0
        assert recording_batcher.events == []
        assert metadata.get(session_id).project_name == "webapp"
        assert metadata.get(session_id).model == "model-a"

    @pytest.mark.asyncio
    async def test_tail_during_rescan_keeps_latest_model(
        self, audit_config, tailer, metadata, records, session_file, append_lines,
        recording_batcher, session_id, monkeypatch,
    ):
        """A tail requested while a rescan reads the prefix is applied after the rebuild."""
        audit_config.debug_process_all = True
        append_lines(session_file, records.model_change("model-a", record_id="x1"))
        await tailer.tail(session_file, "main")

        gate = threading.Event()
        started = threading.Event()
        real_read = tailer_module._read_range

        def gated_read(path, start, end):
            if start == 0 and not gate.is_set():
                started.set()
                gate.wait(5)
            return real_read(path, start, end)

        monkeypatch.setattr(tailer_module, "_read_range", gated_read)

        loop = asyncio.get_running_loop()
        rescan = asyncio.create_task(tailer.rescan_file(session_file, "main"))
        assert await loop.run_in_executor(None, started.wait, 5)

        append_lines(session_file, records.model_change("model-b", record_id="x2"))
        assert await tailer.tail(session_file, "main") == 0

        gate.set()
        assert await rescan == 1
        await tailer.tail(session_file, "main")

        assert metadata.get(session_id).model == "model-b"
        assert recording_batcher.events[-1].data == {"old_model": "model-a", "new_model": "model-b"}
        assert not tailer.in_flight
