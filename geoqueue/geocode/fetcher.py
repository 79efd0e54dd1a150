"""Single-shot provider calls classified into success, empty or error."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import orjson

from geoqueue.geocode.models import Coordinate
from geoqueue.geocode.providers import EmptyResultError, Provider, ProviderResponseError
from geoqueue.geocode.session import GeocodeSession
from geoqueue.observability.metrics import MetricsRegistry
from geoqueue.observability.tracing import log_geocode_failure, log_geocode_result, span


class Outcome(enum.Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(slots=True)
class FetchResult:
    outcome: Outcome
    coordinate: Optional[Coordinate] = None
    error: Optional[str] = None


async def fetch_coordinate(
    *,
    session: GeocodeSession,
    provider: Provider,
    query: str,
    metrics: MetricsRegistry,
    timeout: float = 10.0,
) -> FetchResult:
    """Resolve ``query`` with exactly one provider call. Failures are never retried."""
    url = provider.build_url(query)
    metrics.incr("requests_dispatched")
    try:
        with span(name="geocode", url=url):
            start = time.perf_counter()
            response = await session.fetch(url, headers=provider.headers(), timeout=timeout)
            response.raise_for_status()
            payload = orjson.loads(response.content)
            coordinate = provider.parse(payload)
    except EmptyResultError as exc:
        metrics.incr("geocode_empty")
        log_geocode_failure(url=url, kind=Outcome.EMPTY.value, reason=str(exc))
        return FetchResult(Outcome.EMPTY, error=str(exc))
    except (httpx.HTTPError, httpx.InvalidURL, orjson.JSONDecodeError, ProviderResponseError) as exc:
        metrics.incr("geocode_errors")
        log_geocode_failure(url=url, kind=Outcome.ERROR.value, reason=str(exc))
        return FetchResult(Outcome.ERROR, error=str(exc))

    metrics.incr("geocode_success")
    log_geocode_result(
        url=url,
        status=response.status_code,
        candidates=1,
        elapsed_ms=int((time.perf_counter() - start) * 1000),
    )
    return FetchResult(Outcome.SUCCESS, coordinate=coordinate)
