"""
Structured logging for did:webvh operations.

Modules log through ``logging.getLogger(__name__)``; this module adds a
JSON handler, a one-call ``configure_logging`` and a ``timed_operation``
decorator recording the duration and outcome of build, sign and resolve
operations. Key material is never passed to the logger.
"""

from __future__ import annotations

import functools
import json
import logging
import sys
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER = "webvh"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))
            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "text", stream: Any = None) -> logging.Logger:
    """Attach a single handler to the ``webvh`` logger tree.

    Calling it again replaces the handler installed by the previous call.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))
    for h in list(logger.handlers):
        if getattr(h, "_webvh_handler", False):
            logger.removeHandler(h)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._webvh_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


def configure_from(config: Any, stream: Any = None) -> logging.Logger:
    """``configure_logging`` driven by a :class:`webvh.config.WebvhConfig`."""
    return configure_logging(config.log_level.get(), config.log_format.get(), stream)


T = TypeVar("T")


def timed_operation(operation_name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations on the module's logger."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        logger = logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            error_code = ""
            try:
                return func(*args, **kwargs)
            except Exception as ex:
                error_code = type(ex).__name__
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                status = "failed" if error_code else "completed"
                logger.log(
                    logging.WARNING if error_code else logging.DEBUG,
                    "Operation %s %s",
                    operation_name,
                    status,
                    extra={
                        "operation": operation_name,
                        "duration_ms": round(duration_ms, 3),
                        "error_code": error_code,
                    },
                )
        return wrapper
    return decorator
