from typing import Callable, List, Optional

import httpx
import pytest

from helpers import make_draft
from pinmeet.domain.events.models import ChangeKind, VerificationStatus
from pinmeet.livesync.feed import RemoteFeedSource, StoreFeedSource
from pinmeet.livesync.filter import RadiusFilter
from pinmeet.livesync.models import Pin, PinChange, Position, Viewport
from pinmeet.livesync.pins import PinSet
from pinmeet.livesync.session import MapSession

ORIGIN = Position(0.0, 0.0)


class Ticker:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class FakeSubscription:
    def __init__(self, locality: Optional[str], handler) -> None:
        self.locality = locality
        self.handler = handler
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeSource:
    def __init__(self, pins=()) -> None:
        self.pins: List[Pin] = list(pins)
        self.subscriptions: List[FakeSubscription] = []
        self.queries: List[Position] = []
        self.fail = False
        self.fail_query = False
        self.on_subscribe: Optional[Callable] = None

    @property
    def open(self) -> List[FakeSubscription]:
        return [s for s in self.subscriptions if not s.closed]

    async def query(self, position, radius_m):
        self.queries.append(position)
        if self.fail or self.fail_query:
            raise ConnectionError("offline")
        return list(self.pins)

    async def subscribe(self, locality, handler):
        if self.fail:
            raise ConnectionError("offline")
        subscription = FakeSubscription(locality, handler)
        self.subscriptions.append(subscription)
        if self.on_subscribe is not None:
            await self.on_subscribe(handler)
        return subscription


def _pin(pin_id: str, lat: float, lon: float = 0.0, status: str = "active") -> Pin:
    return Pin(id=pin_id, lat=lat, lon=lon, status=status)


def _insert(pin: Pin) -> PinChange:
    return PinChange(kind=ChangeKind.INSERT, event_id=pin.id, pin=pin)


def test_radius_filter_uses_great_circle_distance():
    radius = RadiusFilter(ORIGIN, 5000)
    inside = _pin("near", 0.04)
    outside = _pin("far", 0.05)

    assert radius.distance_m(inside) == pytest.approx(4448, abs=2)
    assert radius.distance_m(outside) == pytest.approx(5560, abs=2)
    assert radius.admits(inside)
    assert not radius.admits(outside)


def test_radius_filter_applies_changes():
    radius = RadiusFilter(ORIGIN, 5000)
    pins = PinSet()

    assert radius.apply(_insert(_pin("a", 0.01)), pins)
    assert not radius.apply(_insert(_pin("a", 0.01)), pins)
    assert not radius.apply(_insert(_pin("b", 0.2)), pins)
    assert radius.apply(PinChange(ChangeKind.UPDATE, "a", _pin("a", 0.01, status="expired")), pins)
    assert "a" not in pins

    radius.apply(_insert(_pin("c", 0.02)), pins)
    assert radius.apply(PinChange(ChangeKind.DELETE, "c"), pins)
    assert len(pins) == 0


def test_radius_filter_drops_pin_that_moves_out():
    radius = RadiusFilter(ORIGIN, 5000)
    pins = PinSet([_pin("a", 0.01)])
    assert radius.apply(PinChange(ChangeKind.UPDATE, "a", _pin("a", 0.3)), pins)
    assert "a" not in pins


@pytest.mark.asyncio
async def test_start_loads_admitted_pins_and_subscribes_once():
    source = FakeSource([_pin("near", 0.04), _pin("far", 0.05)])
    session = MapSession(source, geocoder=_geocode("Lisbon"))

    assert await session.start(ORIGIN)
    assert [p.id for p in session.visible_pins()] == ["near"]
    assert session.locality == "Lisbon"
    assert len(source.open) == 1
    assert source.open[0].locality == "Lisbon"


def _geocode(name):
    async def geocoder(position):
        return name

    return geocoder


@pytest.mark.asyncio
async def test_geocoder_failure_subscribes_without_locality():
    async def broken(position):
        raise TimeoutError("geocoder down")

    source = FakeSource()
    session = MapSession(source, geocoder=broken)
    assert await session.start(ORIGIN)
    assert session.locality is None
    assert source.open[0].locality is None


@pytest.mark.asyncio
async def test_position_updates_are_sampled_before_requery():
    ticker = Ticker()
    source = FakeSource()
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)

    ticker.t = 10
    assert not await session.update_position(Position(0.0, 0.0005))
    ticker.t = 40
    assert not await session.update_position(Position(0.0, 0.003))
    assert len(source.queries) == 1

    ticker.t = 41
    assert await session.update_position(Position(0.0, 0.006))
    assert len(source.queries) == 2
    assert session.query_position == Position(0.0, 0.006)


@pytest.mark.asyncio
async def test_requery_swaps_to_single_subscription():
    ticker = Ticker()
    source = FakeSource()
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)

    for step in range(1, 4):
        ticker.t = step * 31
        await session.update_position(Position(0.01 * step, 0.0))

    assert len(source.subscriptions) == 4
    assert len(source.open) == 1
    assert source.open[0] is source.subscriptions[-1]


@pytest.mark.asyncio
async def test_deliveries_from_replaced_subscription_are_ignored():
    ticker = Ticker()
    source = FakeSource()
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)
    stale = source.subscriptions[0]

    ticker.t = 31
    await session.update_position(Position(0.01, 0.0))
    await stale.handler(_insert(_pin("ghost", 0.01)))
    assert "ghost" not in session.pins

    await source.open[0].handler(_insert(_pin("live", 0.01)))
    assert "live" in session.pins


@pytest.mark.asyncio
async def test_delivery_before_confirmation_is_applied_after_snapshot():
    source = FakeSource([_pin("a", 0.01)])

    async def early(handler):
        await handler(PinChange(ChangeKind.DELETE, "a"))
        await handler(_insert(_pin("b", 0.02)))

    source.on_subscribe = early
    session = MapSession(source)
    await session.start(ORIGIN)

    assert [p.id for p in session.visible_pins()] == ["b"]


@pytest.mark.asyncio
async def test_change_landing_while_resubscribing_is_not_overwritten():
    ticker = Ticker()
    source = FakeSource([_pin("a", 0.01)])
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)

    async def expire_a(handler):
        # only subscriptions confirmed before this call see the change
        source.pins = []
        for subscription in source.open[:-1]:
            await subscription.handler(PinChange(ChangeKind.UPDATE, "a", _pin("a", 0.01, status="expired")))

    source.on_subscribe = expire_a
    ticker.t = 31
    assert await session.update_position(Position(0.01, 0.0))

    assert "a" not in session.pins
    assert len(source.open) == 1


@pytest.mark.asyncio
async def test_first_start_sees_change_made_while_subscribing():
    source = FakeSource([_pin("a", 0.01)])

    async def delete_a(handler):
        source.pins = []

    source.on_subscribe = delete_a
    session = MapSession(source)
    await session.start(ORIGIN)

    assert session.visible_pins() == []


@pytest.mark.asyncio
async def test_failed_query_closes_new_subscription():
    ticker = Ticker()
    source = FakeSource([_pin("a", 0.01)])
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)
    first = source.open[0]

    source.fail_query = True
    ticker.t = 31
    assert not await session.update_position(Position(0.02, 0.0))
    assert session.needs_retry
    assert source.open == [first]
    assert len(source.subscriptions) == 2
    assert "a" in session.pins


@pytest.mark.asyncio
async def test_failed_refresh_keeps_pins_and_resume_retries():
    ticker = Ticker()
    source = FakeSource([_pin("a", 0.01)])
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)
    first = source.open[0]

    source.fail = True
    ticker.t = 31
    assert not await session.update_position(Position(0.02, 0.0))
    assert session.needs_retry
    assert "a" in session.pins
    assert source.open == [first]
    assert session.query_position == ORIGIN

    source.fail = False
    assert await session.resume()
    assert not session.needs_retry
    assert session.query_position == Position(0.02, 0.0)
    assert len(source.open) == 1 and source.open[0] is not first


@pytest.mark.asyncio
async def test_small_move_retries_after_failure():
    ticker = Ticker()
    source = FakeSource()
    session = MapSession(source, clock=ticker)
    source.fail = True
    assert not await session.start(ORIGIN)
    assert not session.subscribed

    source.fail = False
    ticker.t = 31
    assert await session.update_position(Position(0.0, 0.0))
    assert session.subscribed


@pytest.mark.asyncio
async def test_resume_without_failure_is_noop():
    source = FakeSource()
    session = MapSession(source)
    await session.start(ORIGIN)
    assert not await session.resume()
    assert len(source.queries) == 1


@pytest.mark.asyncio
async def test_stop_releases_subscription():
    source = FakeSource()
    session = MapSession(source)
    await session.start(ORIGIN)
    handler = source.open[0].handler

    await session.stop()
    assert source.open == []
    assert not session.subscribed
    await handler(_insert(_pin("late", 0.01)))
    assert "late" not in session.pins
    assert not await session.update_position(Position(1.0, 1.0))


@pytest.mark.asyncio
async def test_tracking_task_follows_positions():
    ticker = Ticker()
    source = FakeSource()
    session = MapSession(source, clock=ticker)
    await session.start(ORIGIN)

    async def positions():
        ticker.t = 31
        yield Position(0.01, 0.0)

    await session.start_tracking(positions())
    assert session.query_position == Position(0.01, 0.0)
    await session.stop()


@pytest.mark.asyncio
async def test_viewport_clusters_and_update_callback():
    updates = []
    source = FakeSource([_pin("a", 0.0, 0.0), _pin("b", 0.0, 0.001)])
    session = MapSession(source, on_update=updates.append)
    session.set_viewport(Viewport(lat=0.0, lon=0.0, lat_delta=0.5, lon_delta=0.5))
    await session.start(ORIGIN)

    assert len(session.clusters) == 1
    assert session.clusters[0].count == 2
    clusters = session.clusters

    session.set_viewport(Viewport(lat=0.0, lon=0.0, lat_delta=0.0, lon_delta=0.0))
    assert session.clusters is clusters
    assert updates and updates[-1] is session

    session.set_viewport(Viewport(lat=0.0, lon=0.0005, lat_delta=0.002, lon_delta=0.002))
    assert sorted(node.pin.id for node in session.clusters) == ["a", "b"]


@pytest.mark.asyncio
async def test_store_feed_session_filters_by_locality_and_radius(stack):
    for host in ("host-1", "host-2", "host-3"):
        stack.store.set_verification_status(host, VerificationStatus.VERIFIED)
    session = MapSession(StoreFeedSource(stack.store), geocoder=_geocode("Lisbon"))
    await session.start(ORIGIN)

    near = await stack.service.create_event(make_draft("host-1", stack.clock(), lat=0.01))
    await stack.service.create_event(make_draft("host-2", stack.clock(), lat=0.01, city="Porto"))
    await stack.service.create_event(make_draft("host-3", stack.clock(), lat=0.05))

    assert [p.id for p in session.visible_pins()] == [near.event.id]
    assert session.pins.get(near.event.id).participant_count == 1

    await stack.expire_job.run_once(now=near.event.expires_at)
    assert len(session.pins) == 0
    await session.stop()


class FakeSocketClient:
    def __init__(self, ack) -> None:
        self.ack = ack
        self.handlers = {}
        self.connected = False
        self.calls = []

    def on(self, event, handler, namespace=None):
        self.handlers[(namespace, event)] = handler

    async def connect(self, url, namespaces=None, auth=None, wait_timeout=None):
        self.connected = True
        self.auth = auth

    async def call(self, event, data=None, namespace=None, timeout=None):
        self.calls.append((event, data, namespace))
        return self.ack

    async def disconnect(self):
        self.connected = False


@pytest.mark.asyncio
async def test_remote_feed_source_queries_and_subscribes():

    def handler(request):
        assert request.url.path == "/events/nearby"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.url.params["radius_m"] == "5000"
        item = {"id": "ev1", "latitude": 0.01, "longitude": 0.0, "title": "Picnic", "status": "active"}
        return httpx.Response(200, json={"radius_m": 5000, "items": [item]})

    clients = []

    def factory():
        client = FakeSocketClient({"ok": True, "locality": "Lisbon"})
        clients.append(client)
        return client

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    source = RemoteFeedSource("http://api.test", "tok", http=http, client_factory=factory)
    session = MapSession(source, geocoder=_geocode("Lisbon"))
    await session.start(ORIGIN)

    assert [p.id for p in session.visible_pins()] == ["ev1"]
    client = clients[0]
    assert client.auth == {"token": "tok"}
    assert client.calls == [("feed_subscribe", {"locality": "Lisbon"}, "/events")]

    on_change = client.handlers[("/events", "event.change")]
    await on_change({"kind": "delete", "event_id": "ev1", "event": None})
    await on_change({"kind": "bogus"})
    assert len(session.pins) == 0

    await session.stop()
    assert not client.connected
    await source.aclose()


@pytest.mark.asyncio
async def test_remote_feed_refused_subscription_disconnects():
    client = FakeSocketClient({"ok": False, "error": "unauthenticated"})
    source = RemoteFeedSource("http://api.test", "tok", client_factory=lambda: client)

    async def handler(change):
        return None

    with pytest.raises(ConnectionError):
        await source.subscribe(None, handler)
    assert not client.connected
    await source.aclose()
