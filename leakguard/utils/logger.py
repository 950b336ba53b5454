"""structlog setup for LeakGuard.

Request correlation goes through ``structlog.contextvars``: the proxy binds
``request_id`` when a request arrives, and every event logged while that
request is in flight (scanner and walker included) carries it.

Secret values are never handed to a logger; callers log previews
(``leakguard.scanner.detector.preview``). ``drop_payload_fields`` is the
backstop for keys that could only ever hold request content.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from leakguard.constants import SLOW_SCAN_MS

# Event keys whose values would be raw request content or credentials
PAYLOAD_FIELDS = frozenset({"secret", "secrets", "body", "text", "authorization", "x_api_key"})
OMITTED = "[omitted]"


def drop_payload_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in PAYLOAD_FIELDS.intersection(event_dict):
        event_dict[key] = OMITTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the proxy.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines when True, coloured console output otherwise
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        drop_payload_fields,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "leakguard") -> structlog.stdlib.BoundLogger:
    """Lazy logger tagged with ``logger=<name>``.

    Resolution is deferred to the first call, so module-level loggers pick up
    whatever configuration is active when they are used.
    """
    return structlog.get_logger(logger=name)


def bind_request(request_id: str) -> None:
    """Start a fresh log context for one proxied request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)


@contextmanager
def log_duration(
    operation: str,
    logger: structlog.stdlib.BoundLogger,
    slow_ms: float = SLOW_SCAN_MS,
) -> Iterator[None]:
    """Log how long the block took; WARNING when it ran past ``slow_ms``.

    Nothing is logged when the block raises. The caller owns that error.
    """
    start = time.perf_counter()
    yield
    duration_ms = (time.perf_counter() - start) * 1000
    if duration_ms > slow_ms:
        logger.warning("operation_slow", operation=operation, duration_ms=duration_ms)
    else:
        logger.debug("operation_timed", operation=operation, duration_ms=duration_ms)


# Defaults until the entry point reconfigures from the environment
configure_logging()
