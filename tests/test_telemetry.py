import asyncio
import json

import httpx
import pytest

from connscope.config import Settings
from connscope.core.data_models import (
    ClosedConnectionRecord, RateSample, StreamStatus, ViewMode, format_timestamp
)
from connscope.core.errors import ActionError
from connscope.core.telemetry import PAGE_CONNECTIONS, PAGE_DASHBOARD, ConnectionTelemetry, TelemetryService
from tests.utils_payloads import T0, detail, group, iso, payload

T1 = T0 + 1000


def _first(upload=1000, download=500):
    return payload([group("g1", [detail("d1", upload, download, last_seen=iso(T0))])], 1000, 500)


def _feed(telemetry, raw, now):
    frame = telemetry.accept(raw, now)
    telemetry.flush(frame, now)
    return frame


def test_detail_rate_end_to_end():
    telemetry = ConnectionTelemetry()
    telemetry.toggle_expanded("g1")
    _feed(telemetry, _first(), T0)
    _feed(telemetry, payload([group("g1", [detail("d1", 1500, 900, last_seen=iso(T1))])], 1500, 900), T1)

    assert telemetry.detail_rates.rates["d1"] == RateSample(500, 400)


def test_collapsed_groups_get_no_detail_rates():
    telemetry = ConnectionTelemetry()
    _feed(telemetry, _first(), T0)
    _feed(telemetry, _first(1500, 900), T1)
    assert "d1" not in telemetry.detail_rates
    assert "g1" in telemetry.group_rates


def test_closed_session_end_to_end():
    telemetry = ConnectionTelemetry()
    telemetry.toggle_expanded("g1")
    _feed(telemetry, _first(), T0)
    _feed(telemetry, payload([group("g1", [])], 1500, 900), T1)

    assert len(telemetry.closed) == 1
    record = telemetry.closed.ledger[0]
    assert isinstance(record, ClosedConnectionRecord)
    assert record.upload == 1000
    assert record.download == 500
    assert record.closed_at == format_timestamp(T1)
    assert "d1" not in telemetry.detail_rates.rates


def test_closures_counted_even_when_frames_are_skipped():
    telemetry = ConnectionTelemetry()
    telemetry.accept(payload([group("g1", [detail("a"), detail("b")])]), T0)
    telemetry.accept(payload([group("g1", [detail("b")])]), T0 + 100)
    frame = telemetry.accept(payload([group("g1", [])]), T0 + 200)
    telemetry.flush(frame, T0 + 200)
    assert [r.detail.id for r in telemetry.closed.ledger] == ["b", "a"]


def test_non_object_payload_is_ignored():
    telemetry = ConnectionTelemetry()
    telemetry.accept(_first(), T0)
    assert telemetry.accept(["not", "an", "object"], T1) is None
    assert telemetry.accept(None, T1) is None
    assert len(telemetry.closed) == 0
    assert telemetry.accepted == 1


def test_dashboard_prunes_and_samples_traffic():
    telemetry = ConnectionTelemetry()
    assert telemetry.set_page(PAGE_DASHBOARD)
    now = T0 + 60_000
    raw = payload([group("g1", [
        detail("fresh", 100, 10, last_seen=iso(now - 1000)),
        detail("stale", 50, 5, last_seen=iso(now - 40_000)),
    ])], 150, 15)
    frame = _feed(telemetry, raw, now)

    assert frame.groups == []
    assert [d.id for d in frame.snapshot.groups[0].details] == ["fresh"]
    assert frame.snapshot.upload_total == 100
    # pruning must not be mistaken for a closure
    assert len(telemetry.closed) == 0

    raw["connections"][0]["details"][0]["upload"] = 400
    raw["connections"][0]["details"][0]["lastSeen"] = iso(now + 1000)
    _feed(telemetry, raw, now + 1000)
    assert [s.up for s in telemetry.sampler.series] == [0, 300]
    assert telemetry.state()["traffic"][-1]["sessions"] == 1


def test_connections_page_does_not_sample():
    telemetry = ConnectionTelemetry()
    _feed(telemetry, _first(), T0)
    assert telemetry.sampler.series == []


def test_frame_from_previous_page_is_dropped():
    telemetry = ConnectionTelemetry()
    frame = telemetry.accept(_first(), T0)
    telemetry.set_page(PAGE_DASHBOARD, T0)
    assert not telemetry.flush(frame, T0)
    assert telemetry.frames == 0
    assert telemetry.sampler.series == []


def test_page_switch_rebuilds_from_unpruned_snapshot():
    telemetry = ConnectionTelemetry()
    telemetry.set_page(PAGE_DASHBOARD)
    now = T0 + 60_000
    raw = payload([
        group("g1", [detail("fresh", last_seen=iso(now - 1000)), detail("old", last_seen=iso(now - 40_000))]),
        group("g2", [detail("stale", last_seen=iso(now - 50_000))]),
    ])
    frame = telemetry.accept(raw, now)
    assert [g.id for g in frame.snapshot.groups] == ["g1"]

    assert telemetry.set_page(PAGE_CONNECTIONS, now)
    assert not telemetry.flush(frame, now)
    assert {g.id for g in telemetry.display_groups} == {"g1", "g2"}
    assert len(telemetry.snapshot.groups[0].details) == 2


def test_view_mode_switch_resets_rates_and_expanded():
    telemetry = ConnectionTelemetry()
    telemetry.toggle_expanded("g1")
    _feed(telemetry, _first(), T0)
    assert telemetry.set_view_mode("source")
    assert telemetry.view_mode is ViewMode.SOURCE
    assert len(telemetry.group_rates) == 0
    assert telemetry.expanded == set()
    assert [g.id for g in telemetry.display_groups] == ["source:10.0.0.1"]
    assert not telemetry.set_view_mode("bogus")
    assert not telemetry.set_view_mode("source")

    _feed(telemetry, _first(), T1)
    _feed(telemetry, _first(1500, 900), T1 + 1000)
    assert telemetry.group_rates.get("source:10.0.0.1") == RateSample(500, 400)


def test_search_prunes_expanded_rows():
    telemetry = ConnectionTelemetry()
    telemetry.toggle_expanded("g1")
    telemetry.toggle_expanded("g2")
    raw = payload([
        group("g1", [detail("d1", host="alpha.com")], metadata={"host": "alpha.com"}),
        group("g2", [detail("d2", host="beta.com")], metadata={"host": "beta.com"}),
    ])
    telemetry.set_search("alpha")
    _feed(telemetry, raw, T0)
    assert telemetry.expanded == {"g1"}
    assert [g.id for g in telemetry.visible_groups()] == ["g1"]


def test_state_shape():
    telemetry = ConnectionTelemetry()
    _feed(telemetry, _first(), T0)
    telemetry.toggle_sort("upload")
    state = telemetry.state()
    assert state["type"] == "update"
    assert state["sortKey"] == "upload"
    assert state["sortDir"] == "desc"
    assert state["totalSessions"] == 1
    assert state["connections"][0]["id"] == "g1"
    json.dumps(state)


def test_reset_clears_everything():
    telemetry = ConnectionTelemetry()
    _feed(telemetry, _first(), T0)
    _feed(telemetry, payload([]), T1)
    telemetry.reset()
    assert len(telemetry.closed) == 0
    assert len(telemetry.group_rates) == 0
    assert telemetry.snapshot.groups == []


# --- service ---

class FakeCore:
    """In-memory stand-in for the core's REST API."""

    def __init__(self):
        self.snapshot = _first()
        self.closed_ids = []
        self.fail_close = False
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/connections":
            return httpx.Response(200, json=self.snapshot)
        if request.url.path == "/connections/close":
            if self.fail_close:
                return httpx.Response(500, text="core refused")
            ids = json.loads(request.content)["ids"]
            self.closed_ids.extend(ids)
            self.snapshot = payload([])
            return httpx.Response(200, json={"closed": len(ids)})
        return httpx.Response(503)

    def transport(self):
        return httpx.MockTransport(self.handler)


def _service(core, **options):
    settings = Settings(api_base="http://core.test", access_key="", refresh_interval=1)
    options.setdefault("retry_ms", 10)
    return TelemetryService(settings, transport=core.transport(), **options)


def test_service_renders_fetched_snapshot():
    core = FakeCore()
    rendered = []

    async def scenario():
        service = _service(core)
        service.add_listener(lambda t: rendered.append(t.snapshot.upload_total))
        service.start()
        for _ in range(100):
            if rendered:
                break
            await asyncio.sleep(0.01)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert rendered[0] == 1000
    assert service.telemetry.status in (StreamStatus.IDLE, StreamStatus.PAUSED)
    assert not service.running


def test_service_pause_and_resume():
    core = FakeCore()

    async def scenario():
        service = _service(core)
        service.start()
        service.set_paused(True)
        paused = (service.running, service.telemetry.status)
        service.set_paused(False)
        resumed = service.running
        await service.aclose()
        return paused, resumed

    paused, resumed = asyncio.run(scenario())
    assert paused == (False, StreamStatus.PAUSED)
    assert resumed


def test_service_reconfigure_resets_on_source_change():
    core = FakeCore()

    async def scenario():
        service = _service(core, initial_fetch=False)
        await service.refresh()
        core.snapshot = payload([])
        await service.refresh()
        closed_before = len(service.telemetry.closed)
        same = await service.reconfigure(api_base="http://core.test/")
        cadence = await service.reconfigure(refresh_interval=5)
        closed_after_cadence = len(service.telemetry.closed)
        moved = await service.reconfigure(api_base="http://other.test")
        result = (closed_before, same, cadence, closed_after_cadence, moved,
                  len(service.telemetry.closed), service.settings.refresh_interval, service.client.api_base)
        await service.aclose()
        return result

    closed_before, same, cadence, closed_after_cadence, moved, closed_after, refresh, base = asyncio.run(scenario())
    assert closed_before == 1
    assert same is False
    assert cadence is True
    assert closed_after_cadence == 1
    assert moved is True
    assert closed_after == 0
    assert refresh == 5
    assert base == "http://other.test"


def test_service_close_then_refresh():
    core = FakeCore()

    async def scenario():
        service = _service(core, initial_fetch=False)
        await service.refresh()
        closed = await service.close_connections(["7", "7", "x"])
        await service.aclose()
        return closed, service

    closed, service = asyncio.run(scenario())
    assert closed == [7]
    assert core.closed_ids == [7]
    assert [r.url.path for r in core.requests] == [
        "/connections", "/connections/close", "/connections"
    ]
    assert len(service.telemetry.closed) == 1


def test_service_close_failure_raises():
    core = FakeCore()
    core.fail_close = True

    async def scenario():
        service = _service(core)
        try:
            with pytest.raises(ActionError, match="core refused"):
                await service.close_connections([1])
        finally:
            await service.aclose()

    asyncio.run(scenario())


class GatedCore:
    """Holds every snapshot fetch until the gate opens; the stream endpoint is down."""

    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.gate = asyncio.Event()
        self.waiting = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/connections":
            self.waiting += 1
            await self.gate.wait()
            return httpx.Response(200, json=self.snapshot)
        return httpx.Response(503)


def _gated_service(core):
    settings = Settings(api_base="http://core.test", access_key="", refresh_interval=1)
    return TelemetryService(settings, transport=httpx.MockTransport(core.handler),
                            retry_ms=10, initial_fetch=False)


def _old_source():
    return payload([group("g1", [detail("101"), detail("102")])])


def test_refresh_in_flight_across_source_switch_is_discarded():
    core = GatedCore(_old_source())

    async def scenario():
        service = _gated_service(core)
        task = asyncio.create_task(service.refresh())
        while not core.waiting:
            await asyncio.sleep(0)
        await service.reconfigure(api_base="http://new.test")
        service.stop()
        core.gate.set()
        result = await task
        service.telemetry.accept(payload([group("g9", [detail("201")])]), T1)
        await service.aclose()
        return result, service.telemetry

    result, telemetry = asyncio.run(scenario())
    assert result is False
    assert telemetry.closed.ledger == []
    assert telemetry.accepted == 1


def test_refresh_in_flight_when_paused_is_discarded():
    core = GatedCore(_old_source())

    async def scenario():
        service = _gated_service(core)
        task = asyncio.create_task(service.refresh())
        while not core.waiting:
            await asyncio.sleep(0)
        service.set_paused(True)
        core.gate.set()
        result = await task
        await service.aclose()
        return result, service.telemetry

    result, telemetry = asyncio.run(scenario())
    assert result is False
    assert telemetry.accepted == 0
    assert telemetry.status is StreamStatus.PAUSED


def test_leaving_streaming_pages_goes_idle_and_returning_restarts():
    core = FakeCore()

    async def scenario():
        service = _service(core, initial_fetch=False)
        service.start()
        assert service.set_page("other")
        away = (service.running, service.telemetry.status)
        assert service.set_page(PAGE_DASHBOARD)
        back = service.running
        assert service.set_page(PAGE_CONNECTIONS)
        still = service.running
        await service.aclose()
        return away, back, still

    away, back, still = asyncio.run(scenario())
    assert away == (False, StreamStatus.IDLE)
    assert back
    assert still


def test_start_on_non_streaming_page_stays_idle():
    core = FakeCore()

    async def scenario():
        service = _service(core)
        service.telemetry.set_page("other")
        service.start()
        state = (service.running, service.telemetry.status)
        await service.aclose()
        return state

    assert asyncio.run(scenario()) == (False, StreamStatus.IDLE)
    assert core.requests == []


def test_unhiding_with_nothing_pending_fetches_snapshot():
    core = FakeCore()

    async def scenario():
        service = _service(core, initial_fetch=False)
        service.start()
        service.set_hidden(True)
        service.set_hidden(False)
        for _ in range(100):
            if service.telemetry.accepted:
                break
            await asyncio.sleep(0.01)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert any(r.url.path == "/connections" for r in core.requests)
    assert service.telemetry.accepted >= 1
