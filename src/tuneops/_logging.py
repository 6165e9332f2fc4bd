"""Logging for tuneops.

Every record carries the experiment and trial it concerns so generation and
synchronization events can be followed per record in a shared log stream.
Modules log through ``get_logger`` and pass ``extra=context(...)``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

_STREAM_HANDLER_ID = "tuneops_stream"
_FILE_HANDLER_ID = "tuneops_file"
_FORMAT = (
    "ts=%(asctime)s level=%(levelname)s logger=%(name)s "
    "experiment=%(experiment)s trial=%(trial)s msg=%(message)s"
)
CONTEXT_FIELDS = ("experiment", "trial")
_UNSET = "-"


def _resolve_level(level: int | None) -> int:
    if level is not None:
        return level
    env_level = os.environ.get("TUNEOPS_LOG_LEVEL", "").strip().upper()
    resolved = getattr(logging, env_level, None) if env_level else None
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not getattr(record, field, None):
                setattr(record, field, _UNSET)
        return True


def context(
    *, experiment: str | None = None, trial: str | None = None
) -> dict[str, str]:
    """Return the ``extra`` mapping naming the records a log call concerns."""
    return {"experiment": experiment or _UNSET, "trial": trial or _UNSET}


def _prepare(handler: logging.Handler, level: int) -> None:
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    if not any(isinstance(f, _ContextFilter) for f in handler.filters):
        handler.addFilter(_ContextFilter())


def _mark_handler(handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_tuneops_handler_id", handler_id)


def _get_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_tuneops_handler_id", None) == handler_id:
            return handler
    return None


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``tuneops`` namespace."""
    return logging.getLogger(f"tuneops.{name}")


def setup_logging(*, level: int | None = None) -> None:
    """Configure the root ``tuneops`` logger.

    The log level can be set via the *level* parameter or the
    ``TUNEOPS_LOG_LEVEL`` environment variable (DEBUG, INFO, WARNING, ERROR).
    If ``TUNEOPS_LOG_FILE`` is set, a file handler is attached and records at
    least INFO-level generation and synchronization events.
    """
    stream_level = _resolve_level(level)

    root = logging.getLogger("tuneops")
    stream_handler = _get_handler(root, _STREAM_HANDLER_ID)
    if stream_handler is None:
        stream_handler = logging.StreamHandler()
        _mark_handler(stream_handler, _STREAM_HANDLER_ID)
        root.addHandler(stream_handler)
    _prepare(stream_handler, stream_level)

    file_path_raw = os.environ.get("TUNEOPS_LOG_FILE", "").strip()
    file_level: int | None = None
    file_handler = _get_handler(root, _FILE_HANDLER_ID)
    if file_path_raw:
        file_path = Path(file_path_raw).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if (
            file_handler is None
            or not isinstance(file_handler, logging.FileHandler)
            or Path(file_handler.baseFilename).resolve() != file_path
        ):
            if file_handler is not None:
                root.removeHandler(file_handler)
                file_handler.close()
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
            _mark_handler(file_handler, _FILE_HANDLER_ID)
            root.addHandler(file_handler)
        file_level = min(stream_level, logging.INFO)
        _prepare(file_handler, file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    effective_level = stream_level
    if file_level is not None:
        effective_level = min(effective_level, file_level)
    root.setLevel(effective_level)
