"""Audit daemon: file watching, periodic rescans and graceful shutdown.

The daemon runs everything on one asyncio event loop. watchdog observes
``<agents_dir>/<agent>/sessions/`` from its own thread and hands changed
paths to the loop with ``call_soon_threadsafe``; all state mutation then
happens on the loop.

Shutdown order: stop the observer, cancel periodic work, let in-flight
tails finish, flush every pending batch, then persist state.

Example usage:
    config = AuditConfig.load()
    config.validate()
    daemon = AuditDaemon(AuditContext.build(config))
    asyncio.run(daemon.run())
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..config import AuditConfig
from .batcher import EventBatcher
from .delivery import CliSender, DeliveryManager, TaskSupervisor, WebhookSender
from .event_log import EventLog
from .extractor import EventExtractor
from .formatter import MessageFormatter
from .metadata import SessionMetadataIndex, is_session_file
from .state import OffsetStore
from .tailer import LogTailer

logger = logging.getLogger(__name__)


SESSIONS_DIRNAME = "sessions"
INDEX_FILENAME = "sessions.json"
SAVE_DEBOUNCE_SECONDS = 0.1
SHUTDOWN_TAIL_TIMEOUT = 10.0


@dataclass
class AuditContext:
    """All pipeline components, wired together for one daemon.

    Each daemon owns one context; no component is module-global.
    """

    config: AuditConfig
    store: OffsetStore
    metadata: SessionMetadataIndex
    supervisor: TaskSupervisor
    formatter: MessageFormatter
    delivery: DeliveryManager
    batcher: EventBatcher
    extractor: EventExtractor
    tailer: LogTailer
    event_log: Optional[EventLog] = None

    @classmethod
    def build(
        cls,
        config: AuditConfig,
        webhook: Optional[WebhookSender] = None,
        cli: Optional[CliSender] = None,
    ) -> "AuditContext":
        """Create and wire every component from a configuration.

        Args:
            config: Validated audit configuration
            webhook: Replacement primary transport
            cli: Replacement fallback transport
        """
        store = OffsetStore(config.state_file, max_seen_ids=config.max_seen_ids)
        metadata = SessionMetadataIndex(agent_emojis=config.agent_emojis)
        supervisor = TaskSupervisor()
        formatter = MessageFormatter(config, metadata)
        delivery = DeliveryManager(config, webhook=webhook, cli=cli, supervisor=supervisor)
        batcher = EventBatcher(config, formatter, delivery, supervisor=supervisor)

        event_log = None
        if config.event_log_enabled:
            event_log = EventLog(
                config.event_log_file,
                metadata,
                max_bytes=config.event_log_max_bytes,
                backup_count=config.event_log_backups,
            )

        extractor = EventExtractor(
            store,
            metadata,
            batcher,
            event_log=event_log,
            max_tool_calls=config.max_seen_ids,
        )
        tailer = LogTailer(config, store, metadata, extractor)
        return cls(
            config=config,
            store=store,
            metadata=metadata,
            supervisor=supervisor,
            formatter=formatter,
            delivery=delivery,
            batcher=batcher,
            extractor=extractor,
            tailer=tailer,
            event_log=event_log,
        )


class SessionFileHandler(FileSystemEventHandler):
    """Forwards session file changes from the watchdog thread to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[Path], None]):
        super().__init__()
        self._loop = loop
        self._callback = callback

    def on_created(self, event: Any) -> None:
        self._dispatch(event, event.src_path)

    def on_modified(self, event: Any) -> None:
        self._dispatch(event, event.src_path)

    def on_moved(self, event: Any) -> None:
        self._dispatch(event, event.dest_path)

    def _dispatch(self, event: Any, raw_path: Any) -> None:
        if event.is_directory:
            return
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        path = Path(raw_path)
        if not is_session_file(path.name):
            return
        try:
            self._loop.call_soon_threadsafe(self._callback, path)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Ignoring change to %s after shutdown", path)


class AuditDaemon:
    """Drives tailing from file notifications and periodic rescans."""

    def __init__(
        self,
        context: AuditContext,
        observer_factory: Callable[[], Any] = Observer,
    ):
        """Initialize the daemon.

        Args:
            context: Wired pipeline components
            observer_factory: Creates the watchdog observer
        """
        self._ctx = context
        self._config = context.config
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._periodic: List[asyncio.Task] = []
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._stopping = False

    @property
    def context(self) -> AuditContext:
        return self._ctx

    @property
    def is_running(self) -> bool:
        return self._running

    def discover_agents(self) -> List[str]:
        """Names of agent directories under the agents dir."""
        try:
            return sorted(
                entry.name for entry in self._config.agents_dir.iterdir() if entry.is_dir()
            )
        except OSError:
            return []

    def sessions_dir(self, agent_name: str) -> Path:
        return self._config.agents_dir / agent_name / SESSIONS_DIRNAME

    def reload_indexes(self) -> int:
        """Reload every agent's session index."""
        total = 0
        for agent_name in self.discover_agents():
            total += self._ctx.metadata.load_index_file(
                self.sessions_dir(agent_name) / INDEX_FILENAME, agent_name
            )
        return total

    async def scan_all(self) -> int:
        """Reload indexes, rebuild metadata and tail every session file.

        Returns:
            Number of events emitted
        """
        agents = self.discover_agents()
        logger.debug("Discovered agents: %s", ", ".join(agents) or "(none)")

        emitted = 0
        for agent_name in agents:
            sessions_dir = self.sessions_dir(agent_name)
            self._ctx.metadata.load_index_file(sessions_dir / INDEX_FILENAME, agent_name)
            try:
                files = sorted(p for p in sessions_dir.iterdir() if is_session_file(p.name))
            except OSError as e:
                logger.debug("Cannot list %s: %s", sessions_dir, e)
                continue
            for path in files:
                emitted += await self._ctx.tailer.rescan_file(path, agent_name)

        self._schedule_save()
        return emitted

    async def start(self) -> None:
        """Load state, run the initial scan and start watching."""
        if self._running:
            logger.warning("Daemon already running")
            return

        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._ctx.store.load()

        await self.scan_all()
        logger.info("Loaded %d sessions", len(self._ctx.metadata))

        self._start_observer()
        self._periodic = [
            self._loop.create_task(
                self._every(self._config.rescan_interval_ms / 1000, self.scan_all, "rescan"),
                name="periodic-rescan",
            ),
            self._loop.create_task(
                self._every(self._config.save_interval_ms / 1000, self._periodic_save, "save"),
                name="periodic-save",
            ),
        ]
        self._running = True
        logger.info("Watching %s", self._config.agents_dir)

    def _start_observer(self) -> None:
        agents_dir = self._config.agents_dir
        if not agents_dir.is_dir():
            logger.warning("Agents directory %s does not exist, relying on rescans", agents_dir)
            return

        handler = SessionFileHandler(self._loop, self._on_file_changed)
        self._observer = self._observer_factory()
        self._observer.schedule(handler, str(agents_dir), recursive=True)
        self._observer.start()

    def _agent_for(self, path: Path) -> Optional[str]:
        """Agent owning ``<agents_dir>/<agent>/sessions/<file>``."""
        try:
            relative = path.relative_to(self._config.agents_dir)
        except ValueError:
            return None
        parts = relative.parts
        if len(parts) != 3 or parts[1] != SESSIONS_DIRNAME:
            return None
        return parts[0]

    def _on_file_changed(self, path: Path) -> None:
        """Called on the loop thread for each changed session file."""
        if self._stopping:
            return
        agent_name = self._agent_for(path)
        if agent_name is None:
            return
        self._ctx.supervisor.spawn(self._tail_changed(path, agent_name), name=f"tail:{path.name}")

    async def _tail_changed(self, path: Path, agent_name: str) -> None:
        await self._ctx.tailer.tail(path, agent_name)
        if self._ctx.store.dirty:
            self._schedule_save()

    def _schedule_save(self) -> None:
        """Coalesce saves requested in quick succession."""
        if self._stopping or self._save_handle is not None or self._loop is None:
            return
        self._save_handle = self._loop.call_later(SAVE_DEBOUNCE_SECONDS, self._debounced_save)

    def _debounced_save(self) -> None:
        self._save_handle = None
        self._ctx.supervisor.spawn(self._ctx.store.save_async(), name="save-state")

    async def _periodic_save(self) -> None:
        if self._ctx.store.dirty:
            await self._ctx.store.save_async()

    async def _every(
        self,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        name: str,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await func()
            except Exception:
                logger.exception("Periodic %s failed", name)

    def request_stop(self) -> None:
        """Ask run() to shut down (safe to call from signal handlers)."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop watching, flush everything and persist state."""
        if not self._running or self._stopping:
            return
        self._stopping = True
        logger.info("Shutting down")

        if self._observer is not None:
            self._observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, self._observer.join, 5.0)
            self._observer = None

        for task in self._periodic:
            task.cancel()
        for task in self._periodic:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._periodic = []

        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

        await self._ctx.supervisor.drain(timeout=SHUTDOWN_TAIL_TIMEOUT)
        await self._ctx.batcher.flush_all()
        await self._ctx.store.save_async()

        if self._ctx.event_log is not None:
            self._ctx.event_log.close()

        stats = self._ctx.delivery.get_stats()
        logger.info(
            "Delivery totals: sent=%d, fallback=%d, failed=%d, dropped=%d",
            stats["sent"],
            stats["fallback"],
            stats["failed"],
            stats["dropped"],
        )
        self._running = False

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not supported on this platform")

    async def run(self) -> None:
        """Start, wait for a stop request or signal, then shut down."""
        await self.start()
        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
