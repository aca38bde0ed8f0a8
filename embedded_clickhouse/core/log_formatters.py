"""Shared logging formatters and context management."""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from contextlib import contextmanager

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text
from rich.theme import Theme


class LogContext:
    """Thread-local logging context for structured metadata."""

    def __init__(self) -> None:
        self._local = threading.local()

    def set_context(self, **kwargs: Any) -> None:
        """Set context variables for current thread."""
        if not hasattr(self._local, "context"):
            self._local.context = {}
        self._local.context.update(kwargs)

    def get_context(self) -> Dict[str, Any]:
        """Get current thread context."""
        if not hasattr(self._local, "context"):
            return {}
        return self._local.context.copy()

    def clear_context(self) -> None:
        """Clear context for current thread."""
        if hasattr(self._local, "context"):
            self._local.context.clear()

    @contextmanager
    def context(self, **kwargs: Any):
        """Context manager for temporary context variables."""
        old_context = self.get_context()
        try:
            self.set_context(**kwargs)
            yield
        finally:
            self.clear_context()
            self.set_context(**old_context)


# Global logging context
_log_context = LogContext()

# Attributes every LogRecord carries; anything else came in via ``extra``
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_context: bool = True,
        context_getter: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        super().__init__()
        self.include_context = include_context
        self._context_getter = context_getter or _log_context.get_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_ATTRS
        }
        if extra_fields:
            log_entry["fields"] = extra_fields

        if self.include_context:
            context = self._context_getter()
            if context:
                log_entry["context"] = context

        return json.dumps(log_entry, default=str)


class ClickHouseRichHandler(RichHandler):
    """Rich console handler that colours lifecycle events by type."""

    STYLE_MAP = {
        "process": "clickhouse.process",
        "server": "clickhouse.server",
        "artifact": "clickhouse.artifact",
        "event": "clickhouse.event",
    }

    def __init__(self, *args, **kwargs):
        theme = Theme(
            {
                "logging.level.debug": "dim cyan",
                "logging.level.info": "dim blue",
                "logging.level.warning": "yellow",
                "logging.level.error": "red",
                "logging.level.critical": "bold red",
                "clickhouse.event": "bright_green",
                "clickhouse.process": "bright_blue",
                "clickhouse.server": "bright_cyan",
                "clickhouse.artifact": "bright_magenta",
                "clickhouse.instance": "dim",
            }
        )

        console = Console(theme=theme, stderr=True)
        super().__init__(*args, console=console, **kwargs)

    def render_message(self, record: logging.LogRecord, message: str) -> Text:
        """Render message with event-type styling, prefixed by the active instance id."""
        text = Text(message)
        style = self.STYLE_MAP.get(getattr(record, "event_type", None) or "")
        if style:
            text.stylize(style)
        instance_id = _log_context.get_context().get("instance_id")
        if instance_id:
            text = Text.assemble((f"[{instance_id}] ", "clickhouse.instance"), text)
        return text
