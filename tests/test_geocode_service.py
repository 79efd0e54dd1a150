import asyncio
import time
from urllib.parse import parse_qs, urlparse

import httpx

from geoqueue.geocode.models import Coordinate, GeocodeSettings
from geoqueue.geocode.service import GeocodeService
from geoqueue.geocode.session import GeocodeSession


class FakePhotonSession(GeocodeSession):
    """Answers photon-shaped payloads from a table keyed by lower-cased query."""

    def __init__(self, answers=None, *, delay: float = 0.0):
        super().__init__(client=None)
        self._answers = answers or {}
        self._delay = delay
        self.calls = []
        self.active = 0
        self.peak_active = 0

    async def fetch(self, url: str, *, headers=None, timeout: float = 10.0) -> httpx.Response:  # type: ignore[override]
        query = parse_qs(urlparse(url).query)["q"][0]
        self.calls.append((query, time.monotonic()))
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            answer = self._answers.get(query.lower(), (1.0, 2.0))
        finally:
            self.active -= 1
        request = httpx.Request("GET", url)
        if answer == "empty":
            return httpx.Response(200, json={"features": []}, request=request)
        if answer == "error":
            return httpx.Response(500, text="boom", request=request)
        if answer == "crash":
            raise RuntimeError("session blew up")
        lat, lon = answer
        feature = {"geometry": {"coordinates": [lon, lat]}, "properties": {"type": "city", "name": query}}
        return httpx.Response(200, json={"features": [feature]}, request=request)


def _settings(**overrides) -> GeocodeSettings:
    values = {"min_request_interval_ms": 0, "provider": "photon", "photon_url": "https://photon.test/api/?"}
    values.update(overrides)
    return GeocodeSettings(**values)


def test_override_resolves_without_network():
    session = FakePhotonSession()
    received = []

    async def _run():
        service = GeocodeService(_settings(), session=session)
        service.inject_overrides({"Paris": Coordinate(latitude=48.85, longitude=2.35)})
        result = await service.resolve_async("Paris", received.append)
        await asyncio.sleep(0)
        assert len(service.queue) == 0
        assert service.metrics.get("override_hits") == 1
        return result

    result = asyncio.run(_run())
    assert session.calls == []
    assert (result.latitude, result.longitude) == (48.85, 2.35)
    assert result.address == "Paris"
    assert len(received) == 1
    assert received[0].latitude == 48.85


def test_priority_order_overrides_then_init_then_cache():
    session = FakePhotonSession({"lyon": (45.7, 4.8)})

    async def _run():
        service = GeocodeService(_settings(), session=session)
        await service.resolve_async("Lyon")
        assert service.resolve_sync("Lyon").latitude == 45.7
        service.seed_init_cache({"Lyon": Coordinate(latitude=1.0, longitude=1.0)})
        assert service.resolve_sync("Lyon").latitude == 1.0
        service.inject_overrides({"Lyon": Coordinate(latitude=2.0, longitude=2.0)})
        assert service.resolve_sync("Lyon").latitude == 2.0
        assert (await service.resolve_async("Lyon")).latitude == 2.0
        service.remove_overrides(lambda loc: loc.latitude == 2.0)
        assert service.latitude("Lyon") == 1.0
        assert service.longitude("Lyon") == 1.0

    asyncio.run(_run())
    assert len(session.calls) == 1


def test_resolve_sync_miss_returns_none_and_does_not_queue():
    async def _run():
        service = GeocodeService(_settings(), session=FakePhotonSession())
        assert service.resolve_sync("Atlantis") is None
        assert service.latitude("Atlantis") is None
        assert len(service.queue) == 0

    asyncio.run(_run())


def test_success_is_cached_and_hits_increase():
    session = FakePhotonSession({"madrid": (40.4, -3.7)})

    async def _run():
        service = GeocodeService(_settings(), session=session)
        first = await service.resolve_async("Madrid")
        assert first.latitude == 40.4
        assert service.cache_size() == 1
        assert service.cache.hits("madrid") == 0
        service.resolve_sync("MADRID")
        assert service.cache.hits("madrid") == 1
        second = await service.resolve_async("madrid")
        assert service.cache.hits("madrid") == 2
        return first, second

    first, second = asyncio.run(_run())
    assert len(session.calls) == 1
    assert first.address == "Madrid"
    assert second.address == "madrid"


def test_empty_result_is_not_cached():
    session = FakePhotonSession({"nowhere": "empty"})

    async def _run():
        service = GeocodeService(_settings(), session=session)
        first = await service.resolve_async("Nowhere")
        second = await service.resolve_async("Nowhere")
        assert service.cache_size() == 0
        return first, second

    assert asyncio.run(_run()) == (None, None)
    assert len(session.calls) == 2


def test_every_queued_lookup_completes_exactly_once():
    session = FakePhotonSession({"good": (1.0, 1.0), "empty": "empty", "bad": "error", "crash": "crash"})
    received = {}

    def _collector(name):
        return lambda result: received.setdefault(name, []).append(result)

    async def _run():
        service = GeocodeService(_settings(max_concurrent_requests=2), session=session)
        futures = [service.resolve_async(name, _collector(name)) for name in ["good", "empty", "bad", "crash", "later"]]
        results = await asyncio.gather(*futures)
        await asyncio.sleep(0)
        await service.join()
        assert service.admission.in_flight == 0
        return results

    results = asyncio.run(_run())
    assert results[0].latitude == 1.0
    assert results[1:4] == [None, None, None]
    assert results[4] is not None
    assert {name: len(calls) for name, calls in received.items()} == {
        "good": 1,
        "empty": 1,
        "bad": 1,
        "crash": 1,
        "later": 1,
    }


def test_concurrency_cap_is_respected():
    session = FakePhotonSession(delay=0.02)

    async def _run():
        service = GeocodeService(_settings(max_concurrent_requests=2), session=session)
        await service.resolve_many([f"town {idx}" for idx in range(6)])
        return service.admission.peak_in_flight

    peak = asyncio.run(_run())
    assert peak == 2
    assert session.peak_active <= 2
    assert len(session.calls) == 6


def test_dispatches_are_spaced_by_min_interval():
    session = FakePhotonSession()
    interval_ms = 60

    async def _run():
        service = GeocodeService(_settings(min_request_interval_ms=interval_ms), session=session)
        await service.resolve_many(["a", "b", "c"])

    asyncio.run(_run())
    stamps = [stamp for _, stamp in session.calls]
    gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
    assert len(gaps) == 2
    assert all(gap >= interval_ms / 1000 * 0.9 for gap in gaps)


def test_spacing_holds_with_several_slots():
    session = FakePhotonSession(delay=0.01)

    async def _run():
        service = GeocodeService(_settings(max_concurrent_requests=3, min_request_interval_ms=40), session=session)
        await service.resolve_many(["a", "b", "c", "d"])

    asyncio.run(_run())
    stamps = sorted(stamp for _, stamp in session.calls)
    assert all(later - earlier >= 0.036 for earlier, later in zip(stamps, stamps[1:]))


def test_duplicate_queries_short_circuit_at_dispatch():
    session = FakePhotonSession({"berlin": (52.5, 13.4)})

    async def _run():
        service = GeocodeService(_settings(), session=session)
        first = service.resolve_async("Berlin")
        second = service.resolve_async("berlin")
        assert len(service.queue) == 1
        results = await asyncio.gather(first, second)
        assert service.metrics.get("dispatch_short_circuits") == 1
        assert service.cache.hits("berlin") == 1
        return results

    first, second = asyncio.run(_run())
    assert len(session.calls) == 1
    assert first.address == "Berlin"
    assert second.address == "berlin"
    assert (first.latitude, first.longitude) == (second.latitude, second.longitude)


def test_eviction_keeps_frequently_used_queries():
    session = FakePhotonSession()

    async def _run():
        service = GeocodeService(_settings(max_cache_size=2, max_cache_overflow=0), session=session)
        await service.resolve_async("first")
        await service.resolve_async("second")
        for _ in range(5):
            service.resolve_sync("first")
        service.resolve_sync("second")
        await service.resolve_async("third")
        assert service.cache_size() == 2
        assert service.resolve_sync("second") is None
        assert service.resolve_sync("first") is not None
        assert service.resolve_sync("third") is not None

    asyncio.run(_run())


def test_reset_completes_pending_lookups():
    session = FakePhotonSession(delay=0.05)

    async def _run():
        service = GeocodeService(_settings(), session=session)
        await service.resolve_async("warm")
        in_flight = service.resolve_async("slow")
        queued = service.resolve_async("queued")
        await asyncio.sleep(0.01)
        service.reset()
        results = await asyncio.gather(in_flight, queued)
        assert service.cache_size() == 0
        assert service.admission.in_flight == 0
        assert len(service.queue) == 0
        after = await service.resolve_async("again")
        return results, after

    results, after = asyncio.run(_run())
    assert results == [None, None]
    assert after is not None


def test_owned_session_goes_through_the_session_factory():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        feature = {"geometry": {"coordinates": [30.5, 50.45]}, "properties": {"type": "city", "name": "Kyiv"}}
        return httpx.Response(200, json={"features": [feature]})

    async def _run():
        async with GeocodeService(_settings(), transport=httpx.MockTransport(handler)) as service:
            first = await service.resolve_async("Kyiv")
            second = await service.resolve_async("Kyiv")
            session = service._session
            assert session is not None
        assert service._session is None
        return first, second, session

    first, second, session = asyncio.run(_run())
    assert (first.latitude, first.longitude) == (50.45, 30.5)
    assert second.latitude == 50.45
    assert len(seen) == 1
    assert str(seen[0].url) == "https://photon.test/api/?q=Kyiv&limit=1"
    assert session._client.is_closed


def test_injected_session_is_left_open():
    closed = []

    class TrackingSession(FakePhotonSession):
        async def aclose(self) -> None:
            closed.append(True)

    session = TrackingSession()

    async def _run():
        async with GeocodeService(_settings(), session=session) as service:
            await service.resolve_async("Oslo")

    asyncio.run(_run())
    assert len(session.calls) == 1
    assert closed == []


def test_resolve_many_collapses_duplicate_addresses():
    session = FakePhotonSession(delay=0.01)

    async def _run():
        service = GeocodeService(_settings(), session=session)
        results = await service.resolve_many(["Nice", "Nice", "Lille", "Nice"])
        await service.join()
        assert len(service.queue) == 0
        assert service.admission.in_flight == 0
        return results

    results = asyncio.run(_run())
    assert list(results) == ["Nice", "Lille"]
    assert sorted(query for query, _ in session.calls) == ["Lille", "Nice"]
