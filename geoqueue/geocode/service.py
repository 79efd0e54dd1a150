"""Resolution entry point combining overrides, caches and the throttled network path."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Callable, Dict, Iterable, Mapping, Optional

import httpx
import structlog

from geoqueue.geocode.admission import AdmissionController
from geoqueue.geocode.cache import GeocodeCache
from geoqueue.geocode.fetcher import Outcome, fetch_coordinate
from geoqueue.geocode.models import Coordinate, GeocodeSettings
from geoqueue.geocode.providers import Provider, build_provider
from geoqueue.geocode.queue import QueueItem, RequestQueue
from geoqueue.geocode.session import GeocodeSession, create_geocode_session
from geoqueue.geocode.sources import InitCache, OverrideStore
from geoqueue.observability.metrics import MetricsRegistry
from geoqueue.observability.tracing import query_context

LOGGER = structlog.get_logger(__name__)

Callback = Callable[[Optional[Coordinate]], None]


class GeocodeService:
    """Resolves free-text addresses to coordinates.

    Lookups consult, in order, the override store, the init cache and the
    runtime geocode cache. Misses are queued and released to the provider no
    faster than ``min_request_interval_ms`` apart and with at most
    ``max_concurrent_requests`` calls in flight. Every queued lookup resolves
    exactly once, to ``None`` when the provider fails or finds nothing.
    Failures are not cached and not retried.

    Coordinates handed to callers are copies stamped with the caller's own
    query text, so differently-cased queries sharing a cache entry never see
    each other's ``address``.
    """

    def __init__(
        self,
        settings: Optional[GeocodeSettings] = None,
        *,
        session: Optional[GeocodeSession] = None,
        provider: Optional[Provider] = None,
        metrics: Optional[MetricsRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or GeocodeSettings()
        self.metrics = metrics or MetricsRegistry()
        self._provider = provider or build_provider(self.settings)
        self._session = session
        self._owns_session = session is None
        self._transport = transport
        self._session_stack = contextlib.AsyncExitStack()
        self._session_lock = asyncio.Lock()
        self.overrides = OverrideStore()
        self.init_cache = InitCache()
        self.cache = GeocodeCache(
            max_size=self.settings.max_cache_size,
            max_overflow=self.settings.max_cache_overflow,
            metrics=self.metrics,
        )
        self.queue = RequestQueue()
        self.admission = AdmissionController(
            queue=self.queue,
            dispatcher=self._dispatch,
            max_concurrent=self.settings.max_concurrent_requests,
            min_interval=self.settings.min_request_interval,
            metrics=self.metrics,
        )

    async def __aenter__(self) -> "GeocodeService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def inject_overrides(self, locations: Mapping[str, Optional[Coordinate]], replace_all: bool = False) -> None:
        self.overrides.inject(locations, replace_all=replace_all)

    def remove_overrides(self, predicate: Callable[[Coordinate], bool]) -> int:
        return self.overrides.remove(predicate)

    def seed_init_cache(self, locations: Mapping[str, Coordinate]) -> None:
        self.init_cache.seed(locations)

    def cache_size(self) -> int:
        return len(self.cache)

    def _lookup_static(self, address: str) -> Optional[Coordinate]:
        loc = self.overrides.get(address)
        if loc is not None:
            self.metrics.incr("override_hits")
            return loc
        loc = self.init_cache.get(address)
        if loc is not None:
            self.metrics.incr("init_cache_hits")
            return loc
        return None

    def resolve_sync(self, address: str) -> Optional[Coordinate]:
        """Return a known coordinate without touching the network, else None."""
        loc = self._lookup_static(address)
        if loc is None:
            loc = self.cache.lookup(address)
        return loc.stamped(address) if loc is not None else None

    def latitude(self, address: str) -> Optional[float]:
        loc = self.resolve_sync(address)
        return loc.latitude if loc is not None else None

    def longitude(self, address: str) -> Optional[float]:
        loc = self.resolve_sync(address)
        return loc.longitude if loc is not None else None

    def resolve_async(self, address: str, then: Optional[Callback] = None) -> "asyncio.Future[Optional[Coordinate]]":
        """Resolve ``address``, queueing a provider call on a miss.

        Must be called from a running event loop. ``then``, when given, is
        invoked exactly once with the same value the returned future carries.
        """
        future: asyncio.Future[Optional[Coordinate]] = asyncio.get_running_loop().create_future()
        if then is not None:
            future.add_done_callback(lambda done: then(None if done.cancelled() else done.result()))

        loc = self._lookup_static(address)
        if loc is None:
            loc = self.cache.lookup(address)
        if loc is not None:
            future.set_result(loc.stamped(address))
            return future

        self.queue.enqueue(QueueItem(query=address, future=future))
        LOGGER.debug("geocode_enqueued", query=address, backlog=len(self.queue))
        self.admission.drain()
        return future

    async def resolve_many(self, addresses: Iterable[str]) -> Dict[str, Optional[Coordinate]]:
        """Resolve several addresses concurrently, keyed by the original text."""
        pending = {address: self.resolve_async(address) for address in dict.fromkeys(addresses)}
        results = await asyncio.gather(*pending.values())
        return dict(zip(pending.keys(), results))

    async def _dispatch(self, item: QueueItem) -> None:
        # another item may have resolved the same key while this one waited
        cached = self.cache.lookup(item.query)
        if cached is not None:
            self.metrics.incr("dispatch_short_circuits")
            item.complete(cached.stamped(item.query))
            return

        with query_context(item.query):
            await self.admission.wait_rate()
            result = await fetch_coordinate(
                session=await self._ensure_session(),
                provider=self._provider,
                query=item.query,
                metrics=self.metrics,
                timeout=self.settings.timeout_seconds,
            )

        if result.outcome is Outcome.SUCCESS and result.coordinate is not None:
            self.cache.store(item.query, result.coordinate)
            item.complete(result.coordinate.stamped(item.query))
        else:
            item.complete(None)

    async def _ensure_session(self) -> GeocodeSession:
        async with self._session_lock:
            if self._session is None:
                self._session = await self._session_stack.enter_async_context(
                    create_geocode_session(
                        timeout=self.settings.timeout_seconds,
                        max_connections=self.settings.max_concurrent_requests,
                        transport=self._transport,
                    )
                )
        return self._session

    async def join(self) -> None:
        """Wait until every queued lookup has completed."""
        await self.admission.join()

    def reset(self) -> None:
        """Forget cached results and scheduler state.

        Lookups still waiting in the backlog resolve to None. Overrides and the
        init cache are left untouched.
        """
        self.cache.clear()
        for item in self.queue.drain_all():
            item.complete(None)
        self.admission.reset()

    async def aclose(self) -> None:
        self.reset()
        await self._session_stack.aclose()
        if self._owns_session:
            self._session = None
