"""Tracing helpers for geocode dispatches."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("geoqueue.trace")


@contextlib.contextmanager
def query_context(query: str) -> Iterator[None]:
    """Bind the query text to every log line emitted inside the block."""
    bind_contextvars(query=query)
    try:
        yield
    finally:
        unbind_contextvars("query")


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_geocode_result(*, url: str, status: int, candidates: int, elapsed_ms: int) -> None:
    _logger().info(
        "geocode_result",
        url=url,
        status=status,
        candidates=candidates,
        elapsed_ms=elapsed_ms,
    )


def log_geocode_failure(*, url: str, kind: str, reason: str) -> None:
    _logger().warning("geocode_failure", url=url, kind=kind, reason=reason)
