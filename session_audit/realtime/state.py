"""Durable tailing state: byte offsets and the dedup set.

The state file is a JSON object ``{"offsets": {fileKey: offset},
"seenIds": [...]}`` written atomically (temp file, then rename), so a
crash mid-write never leaves a truncated state behind.

Example usage:
    store = OffsetStore(Path("~/.session-audit/state.json").expanduser())
    store.load()

    if not store.has_seen("complete:abc"):   # Marks the id as seen
        emit_event(...)

    store.advance_offset("main:abc.jsonl", 1024)
    await store.save_async()
"""

import asyncio
import errno
import json
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditState:
    """Serializable snapshot of offsets and seen event ids.

    Attributes:
        offsets: Dict mapping file keys (``agent:filename``) to byte offsets
        seen_ids: Seen event ids, oldest first
    """

    offsets: Dict[str, int] = field(default_factory=dict)
    seen_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk JSON layout."""
        return {"offsets": dict(self.offsets), "seenIds": list(self.seen_ids)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditState":
        """Create from the on-disk layout, dropping malformed entries."""
        offsets = data.get("offsets")
        seen_ids = data.get("seenIds")
        return cls(
            offsets={
                str(key): int(value)
                for key, value in (offsets.items() if isinstance(offsets, dict) else [])
                if isinstance(value, int) and not isinstance(value, bool) and value >= 0
            },
            seen_ids=[
                str(item) for item in (seen_ids if isinstance(seen_ids, list) else [])
                if isinstance(item, str)
            ],
        )

    def save(self, path: Path) -> None:
        """Save state to a JSON file using an atomic write.

        Args:
            path: Path to save the state file

        Raises:
            OSError: If the file cannot be written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f)
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    @classmethod
    def load(cls, path: Path) -> "AuditState":
        """Load state from a JSON file.

        Returns:
            Loaded AuditState, or empty state if the file is missing or corrupt
        """
        path = Path(path)

        if not path.exists():
            logger.debug("No state file found at %s, starting fresh", path)
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state file does not contain an object")
            return cls.from_dict(data)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt state file %s: %s", path, e)
            return cls()
        except (OSError, ValueError) as e:
            logger.warning("Error loading state file %s: %s", path, e)
            return cls()


class OffsetStore:
    """Tracks per-file offsets and a bounded set of emitted event ids.

    All mutation happens on the event loop thread. Saves are serialized
    through one asyncio lock; the file write itself runs in the default
    executor on a snapshot taken before the write starts. Each mutation
    bumps a version counter, and a save only marks the version it
    snapshotted as written, so changes made during a write stay dirty.
    """

    def __init__(self, path: Path, max_seen_ids: int = 5000):
        """Initialize the store.

        Args:
            path: State file location
            max_seen_ids: Capacity of the dedup set (FIFO eviction)
        """
        self._path = Path(path)
        self._max_seen_ids = max_seen_ids
        self._offsets: Dict[str, int] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._version = 0
        self._saved_version = 0
        self._save_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        """True if there are changes not yet written."""
        return self._version != self._saved_version

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def load(self) -> None:
        """Replace in-memory state with the contents of the state file."""
        state = AuditState.load(self._path)
        self._offsets = dict(state.offsets)
        self._seen = OrderedDict((event_id, None) for event_id in state.seen_ids)
        self._evict()
        self._version = self._saved_version = 0
        logger.info(
            "Loaded state: %d offsets, %d seen ids",
            len(self._offsets),
            len(self._seen),
        )

    def snapshot(self) -> AuditState:
        """Copy of the current state."""
        return AuditState(offsets=dict(self._offsets), seen_ids=list(self._seen))

    def save(self) -> bool:
        """Write state now.

        Persistence failures are logged; the in-memory state keeps working.

        Returns:
            True if the state file was written
        """
        version = self._version
        written = self._write(self.snapshot())
        if written:
            self._mark_saved(version)
        return written

    async def save_async(self) -> bool:
        """Write state without blocking the event loop.

        Concurrent callers are serialized so writes never interleave.
        """
        async with self._save_lock:
            version = self._version
            snapshot = self.snapshot()
            loop = asyncio.get_running_loop()
            written = await loop.run_in_executor(None, self._write, snapshot)
        if written:
            self._mark_saved(version)
        return written

    def _mark_saved(self, version: int) -> None:
        self._saved_version = max(self._saved_version, version)

    def _write(self, state: AuditState) -> bool:
        try:
            state.save(self._path)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to save state to %s: %s", self._path, e)
            return False
        logger.debug(
            "Saved state to %s (%d offsets, %d seen ids)",
            self._path,
            len(state.offsets),
            len(state.seen_ids),
        )
        return True

    def has_seen(self, event_id: str) -> bool:
        """Check whether an id was already emitted, marking it seen if not.

        Args:
            event_id: Event deduplication id

        Returns:
            True if the id had been seen before this call
        """
        if event_id in self._seen:
            return True
        self._seen[event_id] = None
        self._evict()
        self._version += 1
        return False

    def was_seen(self, event_id: str) -> bool:
        """Pure membership test (does not mark the id)."""
        return event_id in self._seen

    def _evict(self) -> None:
        while len(self._seen) > self._max_seen_ids:
            self._seen.popitem(last=False)

    def get_offset(self, file_key: str) -> Optional[int]:
        """Stored offset for a file, or None if the file is new."""
        return self._offsets.get(file_key)

    def advance_offset(self, file_key: str, offset: int) -> None:
        """Record a new offset. Offsets never move backwards."""
        current = self._offsets.get(file_key)
        if current is not None and offset <= current:
            return
        self._offsets[file_key] = offset
        self._version += 1

    def __len__(self) -> int:
        """Number of tracked files."""
        return len(self._offsets)


class PidFile:
    """Single-instance marker holding the daemon's process id."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Optional[int]:
        """PID stored in the file, or None if missing or unreadable."""
        try:
            return int(self._path.read_text().strip())
        except (OSError, ValueError):
            return None

    def running_pid(self) -> Optional[int]:
        """PID of a live process holding the file.

        Removes the file if it refers to a process that no longer exists.
        """
        pid = self.read()
        if pid is None:
            return None
        if _process_exists(pid):
            return pid

        logger.info("Removing stale PID file %s (pid %d)", self._path, pid)
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove stale PID file %s: %s", self._path, e)
        return None

    def acquire(self) -> bool:
        """Write our PID unless another live instance holds the file.

        Returns:
            True if this process now owns the PID file
        """
        pid = self.running_pid()
        if pid is not None and pid != os.getpid():
            return False

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(f"{os.getpid()}\n")
        return True

    def release(self) -> None:
        """Remove the PID file if this process owns it."""
        if self.read() != os.getpid():
            return
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass


def _process_exists(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as e:
        # EPERM means the process exists but belongs to another user
        return e.errno == errno.EPERM
    return True
