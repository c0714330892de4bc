"""
Structured logging for the cache transfer engine.

Importing this module configures nothing. Loggers live under the ``wfcache``
namespace and propagate to whatever the host application set up; callers
opt in to a level, a JSON Lines file or a rich console with
``configure_logging()``.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator
from urllib.parse import urlsplit, urlunsplit

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

ROOT_LOGGER = "wfcache"

_operation_var: ContextVar[str | None] = ContextVar("operation", default=None)
_cache_key_var: ContextVar[str | None] = ContextVar("cache_key", default=None)
_backend_var: ContextVar[str | None] = ContextVar("backend", default=None)


def current_context() -> dict[str, str]:
    """The logging context that is set, keyed by name."""
    context = {
        "operation": _operation_var.get(),
        "cache_key": _cache_key_var.get(),
        "backend": _backend_var.get(),
    }
    return {name: value for name, value in context.items() if value}


@contextmanager
def log_context(
    operation: str | None = None,
    cache_key: str | None = None,
    backend: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Args:
        operation: Operation name (lookup, download, reserve, upload).
        cache_key: Cache key being worked on.
        backend: Active backend name.
    """
    old_operation = _operation_var.get()
    old_cache_key = _cache_key_var.get()
    old_backend = _backend_var.get()

    try:
        if operation is not None:
            _operation_var.set(operation)
        if cache_key is not None:
            _cache_key_var.set(cache_key)
        if backend is not None:
            _backend_var.set(backend)
        yield
    finally:
        _operation_var.set(old_operation)
        _cache_key_var.set(old_cache_key)
        _backend_var.set(old_backend)


def redact_url(url: str) -> str:
    """Strip query string and fragment (SAS tokens, signatures) from a URL."""
    parts = urlsplit(url)
    if not parts.query and not parts.fragment:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class ContextLogger:
    """Logger wrapper that attaches the logging context to every call.

    Keyword arguments other than ``exc_info`` become structured
    extras under ``record.extra``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def is_debug(self) -> bool:
        """Whether DEBUG records would be emitted."""
        return self._logger.isEnabledFor(logging.DEBUG)

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", False)
        extra = current_context()
        extra.update(kwargs)
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the ``wfcache`` namespace."""
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name))


class JSONLinesFormatter(logging.Formatter):
    """One JSON object per record, carrying the context and extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = dict(getattr(record, "extra", None) or current_context())
        for name in ("operation", "cache_key", "backend"):
            if name in extra:
                log_obj[name] = extra.pop(name)
        if extra:
            log_obj["extra"] = extra
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(log_obj, default=str).decode()


class ContextRichHandler(RichHandler):
    """Rich handler prefixing the level with backend, operation and key."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        context = current_context()

        parts: list[str] = []
        if "backend" in context:
            parts.append(f"[dim]{context['backend']}[/dim]")
        if "operation" in context:
            parts.append(f"[cyan]{context['operation']}[/cyan]")
        if "cache_key" in context:
            # Keys can be long hashes; keep the prefix readable
            key = context["cache_key"]
            parts.append(f"[magenta]{key if len(key) <= 24 else key[:21] + '...'}[/magenta]")

        if not parts:
            return level_text
        return Text.from_markup(f"{level_text} {' '.join(parts)}")


def _has_file_handler(logger: logging.Logger, log_file: Path) -> bool:
    target = os.path.abspath(log_file)
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == target
        for handler in logger.handlers
    )


def configure_logging(
    level: str | None = None,
    log_file: Path | None = None,
    console: bool = False,
) -> logging.Logger:
    """Opt in to level, file and console output for the ``wfcache`` loggers.

    Only the package logger is touched. Handlers are added once; calling this
    again with the same file or console does not duplicate output.

    Args:
        level: Level name for the package logger. None leaves it unchanged.
        log_file: Append JSON Lines records to this file.
        console: Attach a rich console handler on stderr.

    Returns:
        The package logger.
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    if level is not None:
        root_logger.setLevel(level.upper())

    if log_file is not None and not _has_file_handler(root_logger, log_file):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONLinesFormatter())
        root_logger.addHandler(file_handler)

    if console and not any(isinstance(h, ContextRichHandler) for h in root_logger.handlers):
        root_logger.addHandler(
            ContextRichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
                markup=False,
            )
        )

    return root_logger
