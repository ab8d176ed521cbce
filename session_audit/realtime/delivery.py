"""Rate-limited delivery of rendered messages.

Two transports are supported:

- **Webhook** (primary): ``POST {"content": text}`` with requests. An
  HTTP 429 sets a cooldown from the ``Retry-After`` header.
- **CLI fallback**: runs ``openclaw message send --channel ... --target
  ... --message ... --silent`` as a fire-and-forget subprocess. The
  cooldown does not apply to it.

Send methods:

- ``webhook``: webhook only; messages during a cooldown are dropped.
- ``fallback``: CLI only.
- ``auto``: webhook first, CLI when the webhook fails or is cooling down.

Example usage:
    delivery = DeliveryManager(config)
    outcome = await delivery.send("hello")
    await delivery.supervisor.drain()  # Wait for fallback subprocesses
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

import requests

from ..config import AuditConfig
from .formatter import truncate_text

logger = logging.getLogger(__name__)


DEFAULT_RETRY_AFTER = 5.0


class SendMethod(str, Enum):
    WEBHOOK = "webhook"
    FALLBACK = "fallback"
    AUTO = "auto"


class DeliveryOutcome(Enum):
    """Result of one DeliveryManager.send() call."""

    SENT = "sent"                # Delivered through the webhook
    FALLBACK = "fallback"        # Handed to the CLI fallback
    FAILED = "failed"            # Webhook failed and no fallback is enabled
    DROPPED = "dropped"          # Skipped because of a webhook cooldown


@dataclass
class WebhookResult:
    """Outcome of one webhook POST.

    Attributes:
        ok: True on a 2xx response
        status: HTTP status, None on network errors
        retry_after: Cooldown in seconds for 429 responses
        error: Description of the failure
    """

    ok: bool
    status: Optional[int] = None
    retry_after: Optional[float] = None
    error: str = ""

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


def parse_retry_after(value: Optional[str], default: float = DEFAULT_RETRY_AFTER) -> float:
    """Seconds from a Retry-After header; default if missing or not numeric."""
    if value is None:
        return default
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


class WebhookSender:
    """Posts messages to a webhook URL with requests."""

    def __init__(self, url: str, timeout: float = 10.0):
        self._url = url
        self._timeout = timeout

    @property
    def url(self) -> str:
        return self._url

    def post(self, text: str) -> WebhookResult:
        """Send one message (blocking).

        Args:
            text: Message content

        Returns:
            WebhookResult describing the response
        """
        if not self._url:
            return WebhookResult(ok=False, error="no webhook URL configured")

        try:
            response = requests.post(
                self._url,
                json={"content": text},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            return WebhookResult(ok=False, error=str(e))

        if response.status_code == 429:
            return WebhookResult(
                ok=False,
                status=429,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                error="rate limited",
            )
        if not response.ok:
            return WebhookResult(
                ok=False,
                status=response.status_code,
                error=f"HTTP {response.status_code}",
            )
        return WebhookResult(ok=True, status=response.status_code)


class CliSender:
    """Delivers messages through the host platform's messaging CLI."""

    def __init__(self, executable: str, channel: str, target: str):
        self._executable = executable
        self._channel = channel
        self._target = target

    def build_command(self, text: str) -> List[str]:
        return [
            self._executable,
            "message",
            "send",
            "--channel",
            self._channel,
            "--target",
            self._target,
            "--message",
            text,
            "--silent",
        ]

    async def send(self, text: str) -> int:
        """Run the CLI and wait for it to exit.

        Returns:
            The process exit code

        Raises:
            OSError: If the executable cannot be started
        """
        process = await asyncio.create_subprocess_exec(
            *self.build_command(text),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        returncode = await process.wait()
        if returncode != 0:
            logger.warning("Fallback delivery exited with status %d", returncode)
        return returncode


class TaskSupervisor:
    """Owns fire-and-forget tasks and logs their failures.

    Callers never see the outcome of a supervised task; failures are
    logged here instead of surfacing as unobserved exceptions.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Schedule a coroutine on the running loop."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every supervised task (including ones spawned
        meanwhile) has finished.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True if all tasks finished in time
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning("%d background tasks still running", len(self._tasks))
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    def __len__(self) -> int:
        return len(self._tasks)


class DeliveryManager:
    """Sends messages while honoring spacing and the webhook cooldown.

    Sends are serialized so the minimum spacing holds across concurrent
    flushes.
    """

    def __init__(
        self,
        config: AuditConfig,
        webhook: Optional[WebhookSender] = None,
        cli: Optional[CliSender] = None,
        supervisor: Optional[TaskSupervisor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the delivery manager.

        Args:
            config: Audit configuration
            webhook: Primary transport (built from config if None)
            cli: Fallback transport (built from config if None)
            supervisor: Owner of fire-and-forget fallback tasks
            clock: Monotonic clock in seconds
            sleep: Coroutine used for spacing delays
        """
        self._method = SendMethod(config.send_method)
        self._max_length = config.max_message_length
        self._spacing = config.rate_limit_ms / 1000
        self._webhook = webhook or WebhookSender(config.webhook_url, config.webhook_timeout)
        self._cli = cli or CliSender(config.cli_bin, config.channel, config.target_id)
        self._supervisor = supervisor if supervisor is not None else TaskSupervisor()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_send: Optional[float] = None
        self._cooldown_until = 0.0
        self._stats: Dict[str, int] = {outcome.value: 0 for outcome in DeliveryOutcome}

    @property
    def method(self) -> SendMethod:
        return self._method

    @property
    def supervisor(self) -> TaskSupervisor:
        return self._supervisor

    @property
    def cooldown_until(self) -> float:
        return self._cooldown_until

    def in_cooldown(self) -> bool:
        """True while a webhook Retry-After window is active."""
        return self._clock() < self._cooldown_until

    def accepting(self) -> bool:
        """False when a send would be dropped (webhook-only cooldown)."""
        return not (self._method is SendMethod.WEBHOOK and self.in_cooldown())

    def get_stats(self) -> Dict[str, int]:
        """Count of send() calls per outcome."""
        return dict(self._stats)

    async def send(self, text: str) -> DeliveryOutcome:
        """Deliver one message.

        Args:
            text: Rendered message (truncated to the maximum length)

        Returns:
            What happened to the message
        """
        text = truncate_text(text, self._max_length)
        async with self._lock:
            outcome = await self._send_locked(text)
        self._stats[outcome.value] += 1
        return outcome

    async def _send_locked(self, text: str) -> DeliveryOutcome:
        if self._method is SendMethod.FALLBACK:
            await self._wait_for_spacing()
            self._spawn_fallback(text)
            return DeliveryOutcome.FALLBACK

        if self.in_cooldown():
            if self._method is SendMethod.AUTO:
                await self._wait_for_spacing()
                self._spawn_fallback(text)
                return DeliveryOutcome.FALLBACK
            logger.info(
                "Webhook cooling down for %.1fs, dropping message",
                self._cooldown_until - self._clock(),
            )
            return DeliveryOutcome.DROPPED

        await self._wait_for_spacing()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self._webhook.post, text)
        self._last_send = self._clock()

        if result.ok:
            logger.debug("Delivered %d chars via webhook", len(text))
            return DeliveryOutcome.SENT

        if result.rate_limited:
            retry_after = result.retry_after or DEFAULT_RETRY_AFTER
            self._cooldown_until = self._clock() + retry_after
            logger.warning("Webhook rate limited, cooling down for %.1fs", retry_after)
        else:
            logger.warning("Webhook delivery failed: %s", result.error)

        if self._method is SendMethod.AUTO:
            self._spawn_fallback(text)
            return DeliveryOutcome.FALLBACK
        return DeliveryOutcome.FAILED

    async def _wait_for_spacing(self) -> None:
        if self._last_send is not None:
            delay = self._spacing - (self._clock() - self._last_send)
            if delay > 0:
                await self._sleep(delay)
        self._last_send = self._clock()

    def _spawn_fallback(self, text: str) -> None:
        self._supervisor.spawn(self._cli.send(text), name="fallback-send")
