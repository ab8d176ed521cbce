"""Render batches of pending events as chat messages.

A message is an optional header line describing the session followed by
one line (or fenced block) per event. The whole message always fits in
``max_message_length``; events that do not fit are summarized by a
``• … +N more`` marker.

Example output:
    🦞[proj] (claude-sonnet) 👥discord:1234 | 📁/home/u/proj | 📊21k/262k (8%)
    14:36:02.118 ⚡ exec (1.2s):
    ```bash
    npm test
    ```
    14:36:05.004 ✅ Response completed (1,204 tokens): "All tests pass."
"""

import json
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..config import AuditConfig, DEFAULT_TOOL_ICON, EVENT_ICONS, TOOL_ICONS
from .events import DiffStats, EventKind, PendingEvent, split_group_key
from .metadata import ProjectInfo, SessionMetadataIndex

logger = logging.getLogger(__name__)


OVERFLOW_HEADROOM = 50
USER_PREVIEW_LENGTH = 300
EXEC_BLOCK_LENGTH = 450
SUMMARY_LENGTH = 80

_SUMMARY_KEYS = (
    "path", "file_path", "filePath",
    "command",
    "prompt", "description", "query",
    "url", "pattern", "include",
    "task", "agent",
    "sessionId", "taskId",
    "message", "content",
    "id", "name",
)

_LONG_ID_RE = re.compile(r"^(?:[a-f0-9-]{20,}|[0-9]{15,})$")


def truncate_text(text: str, max_length: int) -> str:
    """Truncate text to max_length, ending with "..." when cut."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def _one_line(text: str) -> str:
    return text.replace("\n", " ").strip()


def format_time(ts: datetime) -> str:
    """Local wall-clock time as HH:MM:SS.mmm."""
    local = ts.astimezone()
    return f"{local:%H:%M:%S}.{local.microsecond // 1000:03d}"


def format_duration(duration_ms: Optional[float]) -> str:
    """Human duration in parentheses, or "" when unknown."""
    if duration_ms is None or duration_ms != duration_ms or duration_ms <= 0:
        return ""
    if duration_ms < 1000:
        return f"({round(duration_ms)}ms)"
    if duration_ms < 60000:
        return f"({duration_ms / 1000:.1f}s)"
    minutes = int(duration_ms // 60000)
    seconds = int((duration_ms % 60000) // 1000)
    return f"({minutes}m {seconds}s)"


def extract_summary(args: Mapping[str, Any], max_length: int = SUMMARY_LENGTH) -> str:
    """One-line summary of tool arguments from the most telling key."""
    for key in _SUMMARY_KEYS:
        value = args.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False, default=str)
        return truncate_text(_one_line(value), max_length)
    return ""


def describe_route(key: str) -> str:
    """Compact a routing key to ``surface:action``.

    ``agent:main:discord:channel:123`` becomes ``discord:123``;
    UUIDs and long numeric ids are shortened to 8 characters. Keys that
    cannot be compacted are returned unchanged.
    """
    parts = key.split(":")
    if len(parts) < 3:
        return key
    surface = parts[2]
    action = parts[4] if len(parts) > 4 and parts[4] else (parts[3] if len(parts) > 3 else "")
    if _LONG_ID_RE.match(action):
        action = action[:8]
    if not surface or surface == "main":
        return key
    if action and action != surface:
        return f"{surface}:{action}"
    return surface


def _arg(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class MessageFormatter:
    """Renders event batches with a throttled per-group header."""

    def __init__(
        self,
        config: AuditConfig,
        metadata: SessionMetadataIndex,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the formatter.

        Args:
            config: Audit configuration (lengths and header interval)
            metadata: Session metadata used for headers
            clock: Monotonic clock in seconds, used for header throttling
        """
        self._config = config
        self._metadata = metadata
        self._clock = clock
        self._last_header: Dict[str, float] = {}

    @property
    def preview_length(self) -> int:
        return self._config.tool_preview_length

    def render(self, group_key: str, events: Sequence[PendingEvent]) -> str:
        """Render a batch as one message.

        Args:
            group_key: Batch key (session id plus optional thread suffix)
            events: Events in batch order

        Returns:
            Message text, or "" if every event was suppressed
        """
        session_id, thread = split_group_key(group_key)
        if thread is None and events and events[0].thread_number:
            thread = events[0].thread_number

        lines = [line for line in (self.format_event(e) for e in events) if line]
        skipped = len(events) - len(lines)
        if skipped:
            logger.debug("Suppressed %d events for %s", skipped, group_key)
        if not lines:
            return ""

        max_length = self._config.max_message_length
        if max_length > 2 * OVERFLOW_HEADROOM:
            budget = max_length - OVERFLOW_HEADROOM
        else:
            budget = max_length // 2

        now = self._clock()
        last = self._last_header.get(group_key)
        show_header = last is None or (now - last) * 1000 >= self._config.header_interval_ms

        output: List[str] = []
        total = 0
        if show_header:
            header = truncate_text(self.build_header(session_id, thread), budget)
            output.append(header)
            total = len(header) + 1
            self._last_header[group_key] = now

        for index, line in enumerate(lines):
            if total + len(line) + 1 > budget:
                output.append(f"• … +{len(lines) - index} more")
                break
            output.append(line)
            total += len(line) + 1

        return truncate_text("\n".join(output), max_length)

    def build_header(self, session_id: str, thread: Optional[str] = None) -> str:
        """Session description line for the top of a message."""
        info: ProjectInfo = self._metadata.project(session_id)

        title = f"{info.emoji}[{info.name}]"
        if info.model:
            title += f" ({info.model})"
        if info.is_subagent:
            title += " [subagent]"
        if thread:
            title += f" [thread:{thread}]"

        route = describe_route(info.key) if info.key else info.short_id
        type_icon = {"direct": "👤", "channel": "👥"}.get(info.chat_type, "")

        meta = [f"{type_icon}{route}"]
        if info.cwd:
            meta.append(f"📁{info.cwd}")
        if info.tokens:
            meta.append(f"📊{info.tokens}")
        if info.thinking_level:
            meta.append(f"🧠{info.thinking_level}")
        if info.surface:
            meta.append(f"🖥️{info.surface}")
        if info.provider:
            meta.append(f"🔌{info.provider}")
        if info.updated_at:
            meta.append(f"⏰{info.updated_at}")
        if info.group_id:
            meta.append(f"🔗{info.group_id[:8]}")

        return f"{title} {' | '.join(meta)}"

    def format_event(self, event: PendingEvent) -> Optional[str]:
        """Render one event; None if the event should not be shown."""
        ts = format_time(event.timestamp)
        data = event.data
        kind = event.kind
        preview = self.preview_length
        icon = EVENT_ICONS.get(kind.value, "📌")

        if kind is EventKind.TOOL_CALL:
            return self._format_tool_call(ts, data)

        if kind is EventKind.USER_MESSAGE:
            text = str(data.get("preview") or "").strip()
            if not text or text == "....":
                return None
            sender = truncate_text(_one_line(str(data.get("sender") or "User")), preview)
            line = f"{ts} {icon} {sender}:\n```\n{truncate_text(text, USER_PREVIEW_LENGTH)}\n```"
            if data.get("has_image"):
                image_meta = data.get("image_meta") or []
                meta = truncate_text(", ".join(str(m) for m in image_meta), preview)
                line += f" [🖼️ image: {meta}]" if meta else " [🖼️ image]"
            return line

        if kind is EventKind.ASSISTANT_COMPLETE:
            line = f"{ts} {icon} Response completed"
            tokens = data.get("tokens")
            if tokens:
                line += f" ({tokens:,} tokens)"
            message_preview = _one_line(str(data.get("message_preview") or ""))
            if message_preview:
                line += f': "{truncate_text(message_preview, preview)}"'
            return line

        if kind is EventKind.THINKING:
            text = _one_line(str(data.get("preview") or ""))
            return f'{ts} {icon} Thinking: "{truncate_text(text, preview)}"'

        if kind is EventKind.THINKING_LEVEL:
            level = truncate_text(str(data.get("level") or "unknown"), preview)
            return f"{ts} {icon} Thinking level: {level}"

        if kind is EventKind.ERROR:
            message = _one_line(str(data.get("error") or "Unknown error"))
            return f"{ts} {icon} Error: {truncate_text(message, preview)}"

        if kind is EventKind.PROMPT_ERROR:
            error = _one_line(str(data.get("error") or "unknown"))
            model = data.get("model")
            label = f" ({truncate_text(str(model), preview)})" if model else ""
            return f"{ts} {icon} Prompt error{label}: {truncate_text(error, preview)}"

        if kind is EventKind.MODEL_CHANGE:
            old_model = truncate_text(str(data.get("old_model") or ""), preview)
            new_model = truncate_text(str(data.get("new_model") or ""), preview)
            if old_model and new_model:
                return f"{ts} {icon} Model changed: {old_model} → {new_model}"
            return f"{ts} {icon} Model changed: {new_model}"

        if kind is EventKind.COMPACTION:
            line = f"{ts} {icon} Context compacted"
            tokens_before = data.get("tokens_before")
            if tokens_before:
                line += f" ({round(tokens_before / 1000)}k tokens)"
            summary = truncate_text(_one_line(str(data.get("summary") or "")), 100)
            if summary:
                line += f": {summary}"
            return line

        if kind is EventKind.IMAGE:
            mime_type = truncate_text(str(data.get("mime_type") or "unknown"), preview)
            line = f"{ts} {icon} Image received: {mime_type}"
            source = data.get("source")
            if source:
                line += f" ({truncate_text(source, 30)})"
            return line

        return f"{ts} 📌 {kind.value}: {truncate_text(json.dumps(data, default=str), 80)}"

    def _format_tool_call(self, ts: str, data: Dict[str, Any]) -> str:
        name = str(data.get("name") or "")
        args = data.get("args") or {}
        preview = self.preview_length
        icon = TOOL_ICONS.get(name, DEFAULT_TOOL_ICON)
        duration = format_duration(data.get("duration_ms"))
        duration_str = f" {duration}" if duration else ""
        prefix = f"{ts} {'❌ ' if data.get('is_error') else ''}{icon} "
        path = truncate_text(
            _arg(args, "path") or _arg(args, "file_path") or _arg(args, "filePath"), preview
        )

        if name in ("exec", "bash"):
            fence_open, fence_close = "```bash\n", "\n```"
            command = _arg(args, "command") or "(empty)"
            command = truncate_text(command, EXEC_BLOCK_LENGTH - len(fence_open) - len(fence_close))
            return f"{prefix}{name}{duration_str}:\n{fence_open}{command}{fence_close}"

        if name in ("edit", "write"):
            stats = data.get("diff_stats")
            diff_str = ""
            if isinstance(stats, DiffStats):
                diff_str = (
                    f" (+{stats.added}/-{stats.removed} lines, "
                    f"+{stats.added_chars}/-{stats.removed_chars} chars)"
                )
            return f"{prefix}{name}{duration_str}{diff_str}: `{path or '(unknown)'}`"

        if name == "read":
            return f"{prefix}read{duration_str}: `{path or '(unknown)'}`"

        if name in ("grep", "glob", "grep_search", "glob_search"):
            pattern = _arg(args, "pattern")
            return f"{prefix}{name}{duration_str}: {truncate_text(pattern, preview)}"

        if name in ("webfetch", "web_fetch", "web_search", "http", "http_request"):
            key = "query" if name == "web_search" else "url"
            return f"{prefix}{name}{duration_str}: {truncate_text(_arg(args, key), preview)}"

        if name == "process":
            details = truncate_text(self._process_details(args), preview)
            return f"{prefix}process{duration_str}: {details}"

        if name == "gateway":
            action = truncate_text(_arg(args, "action"), preview) or "call"
            return f"{prefix}gateway{duration_str}: {action}"

        if name == "sessions_spawn":
            label = (
                _arg(args, "label")
                or _arg(args, "task")
                or _arg(args, "prompt")
                or _arg(args, "agent")
            )
            model = _arg(args, "model")
            model_str = f" [{truncate_text(model, preview)}]" if model else ""
            return f"{prefix}spawn{duration_str}: {truncate_text(_one_line(label), preview)}{model_str}"

        if name in ("sessions_list", "sessions_history"):
            action = truncate_text(_arg(args, "action"), preview) or name.replace("sessions_", "")
            return f"{prefix}{name}{duration_str}: {action}"

        if name == "sessions_send":
            target = _arg(args, "target") or _arg(args, "sessionKey")
            return f"{prefix}send{duration_str}: {truncate_text(target, preview)}"

        if name == "message":
            channel = truncate_text(_arg(args, "channel"), preview)
            target = _arg(args, "target")
            message = _one_line(_arg(args, "message"))
            target_str = ""
            if target:
                target_str = f" → {target[:20]}..." if len(target) > 20 else f" → {target}"
            message_str = f" - {truncate_text(message, preview)}" if message else ""
            return f"{prefix}message{duration_str}: {channel}{target_str}{message_str}"

        if name == "subagents":
            action = truncate_text(_arg(args, "action"), preview)
            target = _arg(args, "target")
            recent = _arg(args, "recentMinutes")
            if action == "list" and recent:
                return f"{prefix}subagents{duration_str}: list (last {recent}m)"
            target_str = f" {truncate_text(target, preview)}" if target else ""
            return f"{prefix}subagents{duration_str}: {action}{target_str}"

        if name == "cron":
            details = truncate_text(self._cron_details(args), preview)
            return f"{prefix}cron{duration_str}: {details}"

        if name == "gh":
            command = _arg(args, "command") or _arg(args, "args")
            return f"{prefix}gh{duration_str}: {truncate_text(command, preview)}"

        if name == "memory_search":
            return f"{prefix}memory{duration_str}: {truncate_text(_arg(args, 'query'), preview)}"

        if name == "browser":
            target = _arg(args, "url") or _arg(args, "action")
            return f"{prefix}browser{duration_str}: {truncate_text(target, preview)}"

        label = truncate_text(name, preview)
        summary = extract_summary(args)
        if summary:
            return f"{prefix}{label}{duration_str}: {summary}"
        return f"{prefix}{label}{duration_str}"

    @staticmethod
    def _process_details(args: Mapping[str, Any]) -> str:
        action = _arg(args, "action")
        session_id = _arg(args, "sessionId")
        command = _arg(args, "name")
        status = _arg(args, "status")
        exit_code = _arg(args, "exitCode")

        details = action
        if command and action in ("spawn", "list"):
            details += f" [{truncate_text(command, 30)}]"
        if status and action == "poll":
            details += f" ({status})"
            if exit_code not in ("", "0"):
                details += f" exit:{exit_code}"
        elif session_id and not status:
            details += f" ({truncate_text(session_id, 20)})"
        return details

    @staticmethod
    def _cron_details(args: Mapping[str, Any]) -> str:
        action = _arg(args, "action")
        job_id = _arg(args, "jobId")
        job = args.get("job") if isinstance(args.get("job"), dict) else {}
        job_schedule = job.get("schedule") if isinstance(job.get("schedule"), dict) else {}
        job_name = job.get("name") if isinstance(job.get("name"), str) else ""
        schedule = (
            _arg(args, "schedule")
            or _arg(args, "cron")
            or str(job_schedule.get("expr") or "")
        )

        details = action
        if schedule:
            details += f" [{truncate_text(schedule, 30)}]"
        if job_name and action == "add":
            details += f' "{truncate_text(job_name, 20)}"'
        if job_id and action != "add":
            details += f" ({truncate_text(job_id, 20)})"
        return details
