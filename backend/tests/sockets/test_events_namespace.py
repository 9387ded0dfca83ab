from unittest.mock import AsyncMock

import pytest
import socketio

from helpers import make_draft
from pinmeet.domain.events.chat import channel_id_for
from pinmeet.domain.events.sockets import ChangeFeedRelay, EventsNamespace
from pinmeet.infra.jwt import encode_access
from pinmeet.settings import settings


def _scope_with_authorization(token: str) -> dict:
	return {
		"headers": [(b"authorization", f"Bearer {token}".encode())],
	}


def _namespace() -> EventsNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = EventsNamespace()
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	return namespace


@pytest.mark.asyncio
async def test_connect_requires_token(monkeypatch):
	monkeypatch.setattr(settings, "environment", "production")
	namespace = _namespace()

	with pytest.raises(socketio.exceptions.ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}})
	with pytest.raises(socketio.exceptions.ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_authorization("bogus")})


@pytest.mark.asyncio
async def test_connect_with_bearer_token():
	namespace = _namespace()
	token = encode_access({"sub": "user-1"})

	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_authorization(token)})
	assert namespace._sessions["sid-1"].id == "user-1"


@pytest.mark.asyncio
async def test_feed_subscribe_switches_locality_rooms():
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "user-1"})

	ack = await namespace.trigger_event("feed_subscribe", "sid-1", {"locality": "Lisbon"})
	assert ack == {"ok": True, "locality": "Lisbon"}
	namespace.enter_room.assert_awaited_with("sid-1", "locality:Lisbon")

	await namespace.trigger_event("feed_subscribe", "sid-1", {"locality": "Porto"})
	namespace.enter_room.assert_awaited_with("sid-1", "locality:Porto")
	namespace.leave_room.assert_awaited_with("sid-1", "locality:Lisbon")

	ack = await namespace.trigger_event("feed_subscribe", "sid-1", {})
	assert ack == {"ok": True, "locality": None}
	namespace.enter_room.assert_awaited_with("sid-1", "locality:*")

	await namespace.trigger_event("feed_unsubscribe", "sid-1")
	namespace.leave_room.assert_awaited_with("sid-1", "locality:*")


@pytest.mark.asyncio
async def test_subscribe_before_connect_is_refused():
	namespace = _namespace()
	ack = await namespace.trigger_event("feed_subscribe", "sid-9", {"locality": "Lisbon"})
	assert ack == {"ok": False, "error": "unauthenticated"}
	namespace.enter_room.assert_not_awaited()


@pytest.mark.asyncio
async def test_event_watch_joins_event_room():
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "user-1"})

	assert await namespace.trigger_event("event_watch", "sid-1", {}) == {"ok": False, "error": "event_id_required"}
	assert await namespace.trigger_event("event_watch", "sid-1", {"event_id": "ev1"}) == {"ok": True}
	namespace.enter_room.assert_awaited_with("sid-1", "event:ev1")


@pytest.mark.asyncio
async def test_relay_emits_store_changes_to_locality_rooms(stack):
	namespace = _namespace()
	relay = ChangeFeedRelay(namespace)
	await relay.start(stack.store, stack.chat)

	outcome = await stack.service.create_event(make_draft("host-1", stack.clock(), city="Lisbon"))

	calls = [c for c in namespace.emit.await_args_list if c.args[0] == "event.change"]
	assert calls
	first = calls[0]
	assert first.args[1]["kind"] == "insert"
	assert first.args[1]["event"]["id"] == outcome.event.id
	assert first.kwargs["room"] == ["locality:*", "locality:Lisbon"]

	await relay.stop()
	namespace.emit.reset_mock()
	await stack.service.join_event("guest-1", outcome.event.id)
	namespace.emit.assert_not_awaited()


@pytest.mark.asyncio
async def test_relay_forwards_channel_events(stack):
	namespace = _namespace()
	relay = ChangeFeedRelay(namespace)
	await relay.start(stack.store, stack.chat)
	outcome = await stack.service.create_event(make_draft("host-1", stack.clock()))
	namespace.emit.reset_mock()

	await stack.service.join_event("guest-1", outcome.event.id)

	channel_calls = [c for c in namespace.emit.await_args_list if c.args[0] == "channel.change"]
	assert channel_calls[0].args[1] == {
		"event_id": outcome.event.id,
		"type": "member.added",
		"user_id": "guest-1",
		"data": {},
	}
	assert channel_calls[0].kwargs["room"] == f"event:{outcome.event.id}"
	assert channel_id_for(outcome.event.id) in stack.chat.channels
	await relay.stop()
