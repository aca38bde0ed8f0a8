"""Structured logging with JSON file output and rich terminal formatting."""

import logging
import threading
from typing import Any, Dict, Optional, Union, Protocol
from pathlib import Path

from .log_formatters import StructuredFormatter, ClickHouseRichHandler, _log_context


class Logger(Protocol):
    """Protocol for logger instances to enable dependency injection."""

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log error message."""

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log exception with traceback."""


class LogManager:
    """Central logging configuration for all package loggers.

    Loggers handed out by ``get_logger`` never propagate to the root logger,
    so a host test suite's logging setup is left alone. Handlers installed by
    ``configure`` are attached to loggers created before and after the call.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: list = []
        self._level: Union[int, str] = logging.INFO
        self._configured = False

    @property
    def is_configured(self) -> bool:
        return self._configured

    def configure(
        self,
        level: Union[int, str] = logging.INFO,
        log_file: Optional[Path] = None,
        enable_json: bool = True,
        enable_console: bool = True,
        console_level: Optional[Union[int, str]] = None,
    ) -> None:
        """Configure logging system; reconfiguring replaces previous handlers."""
        with self._lock:
            if self._configured:
                self._clear_handlers()

            if isinstance(level, str):
                level = level.upper()
            self._level = level

            if enable_json and log_file:
                log_file = Path(log_file)
                log_file.parent.mkdir(parents=True, exist_ok=True)
                json_handler = logging.FileHandler(log_file)
                json_handler.setFormatter(StructuredFormatter(include_context=True))
                json_handler.setLevel(level)
                self._handlers.append(json_handler)

            if enable_console:
                console_handler = ClickHouseRichHandler(
                    show_time=True, show_path=False, markup=False
                )
                console_handler.setLevel(console_level or level)
                self._handlers.append(console_handler)

            for logger in self._loggers.values():
                self._attach(logger)

            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        """Get a logger instance."""
        with self._lock:
            if name in self._loggers:
                return self._loggers[name]

            logger = logging.getLogger(name)
            logger.propagate = False
            self._attach(logger)
            self._loggers[name] = logger
            return logger

    def _attach(self, logger: logging.Logger) -> None:
        logger.setLevel(self._level)
        for handler in self._handlers:
            if handler not in logger.handlers:
                logger.addHandler(handler)

    def _clear_handlers(self) -> None:
        for logger in self._loggers.values():
            for handler in self._handlers:
                logger.removeHandler(handler)
        for handler in self._handlers:
            try:
                handler.close()
            except (OSError, RuntimeError):
                pass  # Ignore handler close errors
        self._handlers = []

    def shutdown(self) -> None:
        """Detach and close all handlers."""
        with self._lock:
            self._clear_handlers()
            self._configured = False


# Global log manager instance
_log_manager = LogManager()


def configure_logging(**kwargs: Any) -> None:
    """Configure the global logging system."""
    _log_manager.configure(**kwargs)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return _log_manager.get_logger(name)


def is_logging_configured() -> bool:
    return _log_manager.is_configured


def shutdown_logging() -> None:
    """Shutdown the logging system."""
    _log_manager.shutdown()


def log_event(
    logger: Logger, event_type: str, message: str, **kwargs: Any
) -> None:
    """Log a structured event with context."""
    logger.info(message, extra={"event_type": event_type, **kwargs})


def log_process_event(
    logger: Logger, event: str, pid: Optional[int] = None, **kwargs: Any
) -> None:
    """Log a process-related event."""
    extra: Dict[str, Any] = {"event_type": "process", "process_event": event}
    if pid is not None:
        extra["pid"] = pid
    extra.update(kwargs)
    logger.info("Process %s %s", pid, event, extra=extra)


def log_server_event(
    logger: Logger, event: str, instance_id: Optional[str] = None, **kwargs: Any
) -> None:
    """Log a server lifecycle event."""
    extra: Dict[str, Any] = {"event_type": "server", "server_event": event}
    if instance_id is not None:
        extra["instance_id"] = str(instance_id)
    extra.update(kwargs)
    logger.info("Server %s %s", instance_id, event, extra=extra)


def log_artifact_event(
    logger: Logger, event: str, key: Optional[str] = None, **kwargs: Any
) -> None:
    """Log a download or cache event."""
    extra: Dict[str, Any] = {"event_type": "artifact", "artifact_event": event}
    if key is not None:
        extra["cache_key"] = str(key)
    extra.update(kwargs)
    logger.info("Artifact %s %s", key, event, extra=extra)


# Context management shortcuts
def set_log_context(**kwargs: Any) -> None:
    """Set logging context for current thread."""
    _log_context.set_context(**kwargs)


def get_log_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get_context()


def clear_log_context() -> None:
    """Clear current logging context."""
    _log_context.clear_context()


def log_context(**kwargs: Any) -> Any:
    """Context manager for temporary logging context."""
    return _log_context.context(**kwargs)
