"""Configuration for the session audit daemon.

Settings are layered, lowest precedence first:

1. Defaults declared on :class:`AuditConfig`
2. A JSON config file (snake_case keys, or the camelCase keys used by
   the plugin manifest, e.g. ``targetId`` / ``rateLimitMs``)
3. ``SESSION_AUDIT_*`` environment variables (plus ``OPENCLAW_BIN``)
4. Command-line flags (applied with :meth:`AuditConfig.apply_overrides`)

Example usage:
    config = AuditConfig.load(Path("config.json"))
    config.apply_overrides(channel="discord", target_id="1234")
    config.validate()  # Raises ConfigError on fatal misconfiguration
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


ENV_PREFIX = "SESSION_AUDIT_"

SEND_METHODS = ("webhook", "fallback", "auto")

# Room for one event line plus the "+N more" overflow marker
MIN_MESSAGE_LENGTH = 100

DEFAULT_AGENT_EMOJIS: Dict[str, str] = {"clawd": "🦞"}
DEFAULT_AGENT_EMOJI = "🤖"

DEFAULT_TOOL_ICON = "🔧"

TOOL_ICONS: Dict[str, str] = {
    "exec": "⚡",
    "bash": "💻",
    "edit": "✏️",
    "write": "📝",
    "read": "📖",
    "glob": "🔍",
    "grep": "🔎",
    "glob_search": "🔍",
    "grep_search": "🔎",
    "webfetch": "🌐",
    "web_fetch": "🌐",
    "web_search": "🔎",
    "http": "🌐",
    "http_request": "🌐",
    "browser": "🌐",
    "process": "⚙️",
    "gateway": "🚪",
    "sessions_spawn": "🚀",
    "sessions_list": "📋",
    "sessions_history": "📜",
    "sessions_send": "📤",
    "subagents": "🤖",
    "message": "💬",
    "cron": "⏰",
    "gh": "🐙",
    "memory_search": "🧠",
    "image": "🖼️",
    "nodes": "🔷",
    "session_status": "📊",
    "agents_list": "📋",
    "task": "📋",
    "skill": "🎯",
    "todo": "📝",
    "update_todo": "📝",
    "sed_replace": "✏️",
    "diff": "📊",
    "git_diff": "🔀",
    "git_status": "📝",
    "run_background": "🔄",
    "check_background": "🔍",
    "list_background": "📋",
    "kill_background": "🛑",
}

EVENT_ICONS: Dict[str, str] = {
    "user_message": "💬",
    "assistant_complete": "✅",
    "thinking": "💭",
    "thinking_level": "🧠",
    "error": "❌",
    "prompt_error": "❌",
    "model_change": "🔄",
    "compaction": "🗜️",
    "image": "🖼️",
}

_INT_FIELDS = {
    "rate_limit_ms",
    "batch_window_ms",
    "max_batch_size",
    "max_message_length",
    "max_file_size",
    "max_seen_ids",
    "header_interval_ms",
    "rescan_interval_ms",
    "save_interval_ms",
    "tool_preview_length",
    "event_log_max_bytes",
    "event_log_backups",
}
_FLOAT_FIELDS = {"webhook_timeout"}
_BOOL_FIELDS = {"debug", "debug_process_all", "event_log_enabled"}
_PATH_FIELDS = {"agents_dir", "state_dir"}
_STR_FIELDS = {"channel", "target_id", "webhook_url", "send_method", "cli_bin"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class ConfigError(ValueError):
    """Raised when the configuration cannot be used to start the daemon."""


def _default_agents_dir() -> Path:
    return Path.home() / ".openclaw" / "agents"


def _default_state_dir() -> Path:
    return Path.home() / ".session-audit"


def _snake_case(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def parse_agent_emojis(value: Any) -> Optional[Dict[str, str]]:
    """Parse an agent emoji override mapping.

    Accepts either a mapping or a JSON object string. Non-string keys
    or values are dropped.

    Args:
        value: Mapping or JSON string

    Returns:
        Merged mapping (defaults plus overrides), or None if invalid
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse agent emojis: %s", e)
            return None

    if not isinstance(value, dict):
        logger.warning("Agent emojis must be a JSON object, ignoring")
        return None

    result = dict(DEFAULT_AGENT_EMOJIS)
    for key, emoji in value.items():
        if isinstance(key, str) and isinstance(emoji, str):
            result[key] = emoji
    return result


@dataclass
class AuditConfig:
    """Configuration for the session audit daemon.

    Attributes:
        agents_dir: Directory containing one sub-directory per agent
        state_dir: Directory for state.json, the PID file and events.jsonl
        channel: Chat platform name passed to the fallback CLI
        target_id: Channel/user identifier passed to the fallback CLI
        webhook_url: Primary delivery endpoint
        send_method: "webhook", "fallback" or "auto"
        cli_bin: Executable used for fallback delivery
        rate_limit_ms: Minimum spacing between outbound messages
        batch_window_ms: Inactivity window before a batch is flushed
        max_batch_size: Batch size that forces an immediate flush
        max_message_length: Hard limit on one outbound message
        max_file_size: Session files larger than this are not tailed
        max_seen_ids: Capacity of the dedup set
        header_interval_ms: Minimum interval between headers per group
        rescan_interval_ms: Interval of the full rescan (and index reload)
        save_interval_ms: Interval of the periodic state save
        tool_preview_length: Truncation length for per-event previews
        webhook_timeout: HTTP timeout in seconds
        agent_emojis: Per-project emoji overrides
        debug: Verbose tracing
        debug_process_all: Start new files at offset 0 instead of EOF
        event_log_enabled: Append extracted events to events.jsonl
        event_log_max_bytes: Rotation threshold for events.jsonl
        event_log_backups: Number of rotated event logs kept
    """

    agents_dir: Path = field(default_factory=_default_agents_dir)
    state_dir: Path = field(default_factory=_default_state_dir)
    channel: str = ""
    target_id: str = ""
    webhook_url: str = ""
    send_method: str = "auto"
    cli_bin: str = "openclaw"
    rate_limit_ms: int = 2000
    batch_window_ms: int = 10000
    max_batch_size: int = 15
    max_message_length: int = 1700
    max_file_size: int = 10_000_000
    max_seen_ids: int = 5000
    header_interval_ms: int = 60000
    rescan_interval_ms: int = 60000
    save_interval_ms: int = 30000
    tool_preview_length: int = 250
    webhook_timeout: float = 10.0
    agent_emojis: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_AGENT_EMOJIS)
    )
    debug: bool = False
    debug_process_all: bool = False
    event_log_enabled: bool = True
    event_log_max_bytes: int = 10 * 1024 * 1024
    event_log_backups: int = 5

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def event_log_file(self) -> Path:
        return self.state_dir / "events.jsonl"

    @classmethod
    def load(
        cls,
        config_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AuditConfig":
        """Build a configuration from defaults, a file and the environment.

        Args:
            config_file: Optional JSON config file
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Populated AuditConfig (not yet validated)

        Raises:
            ConfigError: If the config file exists but cannot be read
        """
        config = cls()
        if config_file is not None:
            config.update_from_file(config_file)
        config.update_from_env(os.environ if environ is None else environ)
        return config

    def update_from_file(self, path: Path) -> None:
        """Apply settings from a JSON config file.

        Raises:
            ConfigError: If the file is missing, unreadable or not an object
        """
        path = Path(path).expanduser()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        known = {f.name for f in fields(self)}
        for key, value in data.items():
            name = _snake_case(key)
            if name not in known:
                logger.warning("Unknown config option %r in %s", key, path)
                continue
            self._apply(name, value, source=str(path))

    def update_from_env(self, environ: Mapping[str, str]) -> None:
        """Apply ``SESSION_AUDIT_*`` environment overrides."""
        for f in fields(self):
            env_name = ENV_PREFIX + f.name.upper()
            if env_name in environ:
                self._apply(f.name, environ[env_name], source=env_name)

        if environ.get("OPENCLAW_BIN"):
            self.cli_bin = environ["OPENCLAW_BIN"]

    def apply_overrides(self, **overrides: Any) -> None:
        """Apply explicit overrides (e.g. from CLI flags), skipping None."""
        for name, value in overrides.items():
            if value is None:
                continue
            self._apply(name, value, source="command line")

    def _apply(self, name: str, value: Any, source: str) -> None:
        """Coerce and set one option; invalid values keep the current one."""
        if name in _INT_FIELDS:
            coerced = _positive_int(value)
            if coerced is None:
                logger.warning("Ignoring invalid %s=%r from %s", name, value, source)
                return
            setattr(self, name, coerced)
        elif name in _FLOAT_FIELDS:
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = 0.0
            if number <= 0:
                logger.warning("Ignoring invalid %s=%r from %s", name, value, source)
                return
            setattr(self, name, number)
        elif name in _BOOL_FIELDS:
            flag = _parse_bool(value)
            if flag is None:
                logger.warning("Ignoring invalid %s=%r from %s", name, value, source)
                return
            setattr(self, name, flag)
        elif name in _PATH_FIELDS:
            setattr(self, name, Path(str(value)).expanduser())
        elif name == "agent_emojis":
            emojis = parse_agent_emojis(value)
            if emojis is not None:
                self.agent_emojis = emojis
        elif name in _STR_FIELDS:
            setattr(self, name, str(value))
        else:
            raise ConfigError(f"Unknown config option: {name}")

    def validate(self) -> None:
        """Check that the daemon can start with this configuration.

        Raises:
            ConfigError: On an unknown send method, a missing delivery target
                or a message length too small to hold an event
        """
        if self.max_message_length < MIN_MESSAGE_LENGTH:
            raise ConfigError(
                f"max_message_length must be at least {MIN_MESSAGE_LENGTH} "
                f"(got {self.max_message_length})"
            )
        if self.send_method not in SEND_METHODS:
            raise ConfigError(
                f"Invalid send method {self.send_method!r} "
                f"(expected one of: {', '.join(SEND_METHODS)})"
            )
        if self.send_method == "webhook" and not self.webhook_url:
            raise ConfigError("send method 'webhook' requires a webhook URL")
        if self.send_method in ("fallback", "auto"):
            missing = [
                name
                for name, value in (("channel", self.channel), ("target_id", self.target_id))
                if not value
            ]
            if missing:
                raise ConfigError(
                    f"send method {self.send_method!r} requires: {', '.join(missing)}"
                )


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None
