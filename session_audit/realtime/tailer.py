"""Incremental tailing of session log files.

Reads only the bytes appended since the stored offset, consumes complete
(newline-terminated) lines in file order, and hands each parsed record
to the :class:`EventExtractor`. A partially written last line is left
for the next pass. Reads run in the default executor so the event loop
never blocks on file I/O.

All work on one file is serialized. A tail or rescan requested while
another is in flight for that file is folded into it: the running pass
rebuilds metadata (for a rescan) and reads once more before it finishes.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Set

from ..config import AuditConfig
from ..records import LogRecord, classify_record
from .extractor import EventExtractor
from .metadata import SessionMetadataIndex, base_session_id, is_session_file, thread_number
from .state import OffsetStore

logger = logging.getLogger(__name__)


def offset_key(agent_name: str, filename: str) -> str:
    """Offset-map key of a session file, namespaced by agent."""
    return f"{agent_name}:{filename}"


def _file_size(path: Path) -> int:
    return os.stat(path).st_size


def _read_range(path: Path, start: int, end: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(end - start)


class LogTailer:
    """Reads new lines from session files and extracts their events."""

    def __init__(
        self,
        config: AuditConfig,
        store: OffsetStore,
        metadata: SessionMetadataIndex,
        extractor: EventExtractor,
    ):
        self._config = config
        self._store = store
        self._metadata = metadata
        self._extractor = extractor
        self._in_flight: Set[str] = set()
        self._rerun: Set[str] = set()
        self._rescan: Set[str] = set()

    async def tail(self, path: Path, agent_name: str) -> int:
        """Process lines appended to a session file since the last pass.

        Args:
            path: Session log file
            agent_name: Agent namespace owning the file

        Returns:
            Number of events emitted by this call (0 if the request was
            folded into a pass already in flight)
        """
        return await self._run(Path(path), agent_name, rescan=False)

    async def rescan_file(self, path: Path, agent_name: str) -> int:
        """Rebuild metadata for a file, then tail it, as one serialized pass."""
        return await self._run(Path(path), agent_name, rescan=True)

    async def _run(self, path: Path, agent_name: str, rescan: bool) -> int:
        if not is_session_file(path.name):
            return 0

        key = offset_key(agent_name, path.name)
        if rescan:
            self._rescan.add(key)
        if key in self._in_flight:
            self._rerun.add(key)
            return 0

        self._in_flight.add(key)
        emitted = 0
        try:
            while True:
                if key in self._rescan:
                    self._rescan.discard(key)
                    await self._rebuild_metadata(path, agent_name, key)
                emitted += await self._tail_once(path, agent_name, key)
                if key not in self._rerun:
                    break
                self._rerun.discard(key)
        finally:
            self._in_flight.discard(key)
            self._rerun.discard(key)
            self._rescan.discard(key)
        return emitted

    async def _tail_once(self, path: Path, agent_name: str, key: str) -> int:
        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(None, _file_size, path)
        except OSError as e:
            logger.debug("Cannot stat %s: %s", path, e)
            return 0

        if size > self._config.max_file_size:
            logger.debug("Skipping %s (%d bytes exceeds limit)", path.name, size)
            return 0

        offset = self._store.get_offset(key)
        if offset is None:
            offset = 0 if self._config.debug_process_all else size
            self._store.advance_offset(key, offset)
            if offset == 0:
                logger.debug("Processing %s from the beginning", path.name)

        if size <= offset:
            return 0

        try:
            data = await loop.run_in_executor(None, _read_range, path, offset, size)
        except OSError as e:
            logger.warning("Error reading session file %s: %s", path, e)
            return 0

        end = data.rfind(b"\n")
        if end < 0:
            return 0
        chunk = data[: end + 1]

        session_id = base_session_id(path.name)
        thread = thread_number(path.name)
        emitted = 0
        for raw_line in chunk.split(b"\n")[:-1]:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed line in %s: %s", path.name, e)
                continue

            record = classify_record(entry)
            try:
                emitted += len(self._extractor.process(record, session_id, thread, agent_name))
            except Exception as e:
                logger.warning("Failed to process line in %s: %s", path.name, e)

        self._store.advance_offset(key, offset + len(chunk))
        if emitted:
            logger.debug("Extracted %d events from %s", emitted, path.name)
        return emitted

    async def _rebuild_metadata(self, path: Path, agent_name: str, key: str) -> None:
        """Re-derive a session's metadata from the already-processed part
        of its file.

        Lines past the stored offset are left to the tail pass that follows,
        which applies them (and reports model changes against the prior model).
        """
        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(None, _file_size, path)
        except OSError as e:
            logger.debug("Cannot stat %s: %s", path, e)
            return
        if size > self._config.max_file_size:
            return

        limit = self._store.get_offset(key)
        if limit is None:
            limit = 0 if self._config.debug_process_all else size
        limit = min(limit, size)
        if limit == 0:
            return

        try:
            data = await loop.run_in_executor(None, _read_range, path, 0, limit)
        except OSError as e:
            logger.warning("Failed to read file during scan %s: %s", path, e)
            return

        records: List[LogRecord] = []
        for raw_line in data.split(b"\n"):
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                records.append(classify_record(json.loads(line)))
            except json.JSONDecodeError as e:
                logger.debug("Skipping malformed line during scan of %s: %s", path.name, e)

        self._metadata.rebuild(base_session_id(path.name), records, agent_name)

    def is_tailing(self, path: Path, agent_name: str) -> bool:
        return offset_key(agent_name, Path(path).name) in self._in_flight

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)
