"""Socket.IO namespace relaying the event change feed to map clients."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

import socketio
from fastapi import HTTPException

from pinmeet.domain.events.chat import ChannelEvent, ChatProvider, event_id_for
from pinmeet.domain.events.models import ChangeRecord
from pinmeet.domain.events.store import EventStore, Subscription
from pinmeet.infra.auth import AuthenticatedUser, verify_access_jwt
from pinmeet.obs import metrics as obs_metrics
from pinmeet.settings import settings

logger = logging.getLogger(__name__)

ALL_LOCALITIES = "*"


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _clean(value: object) -> Optional[str]:
	text = str(value).strip() if value is not None else ""
	return text or None


class EventsNamespace(socketio.AsyncNamespace):
	"""Clients join one locality room for feed changes plus any event rooms they watch."""

	def __init__(self) -> None:
		super().__init__("/events")
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self._localities: Dict[str, str] = {}

	@staticmethod
	def locality_room(locality: Optional[str]) -> str:
		return f"locality:{locality or ALL_LOCALITIES}"

	@staticmethod
	def event_room(event_id: str) -> str:
		return f"event:{event_id}"

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		try:
			user = self._authorise(environ, auth)
		except Exception:
			raise socketio.exceptions.ConnectionRefusedError("unauthorized") from None
		obs_metrics.socket_connected(self.namespace)
		self._sessions[sid] = user

	async def on_disconnect(self, sid: str, *_args) -> None:
		if self._sessions.pop(sid, None) is not None:
			obs_metrics.socket_disconnected(self.namespace)
		self._localities.pop(sid, None)

	async def on_feed_subscribe(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "feed_subscribe")
		if sid not in self._sessions:
			return {"ok": False, "error": "unauthenticated"}
		locality = _clean((payload or {}).get("locality"))
		room = self.locality_room(locality)
		previous = self._localities.get(sid)
		# join before leave so no change is missed in between
		await self.enter_room(sid, room)
		if previous and previous != room:
			await self.leave_room(sid, previous)
		self._localities[sid] = room
		return {"ok": True, "locality": locality}

	async def on_feed_unsubscribe(self, sid: str, _payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "feed_unsubscribe")
		previous = self._localities.pop(sid, None)
		if previous:
			await self.leave_room(sid, previous)
		return {"ok": True}

	async def on_event_watch(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "event_watch")
		if sid not in self._sessions:
			return {"ok": False, "error": "unauthenticated"}
		event_id = _clean((payload or {}).get("event_id"))
		if not event_id:
			return {"ok": False, "error": "event_id_required"}
		await self.enter_room(sid, self.event_room(event_id))
		return {"ok": True}

	async def on_event_unwatch(self, sid: str, payload: Optional[dict] = None) -> dict:
		event_id = _clean((payload or {}).get("event_id"))
		if event_id:
			await self.leave_room(sid, self.event_room(event_id))
		return {"ok": True}

	def _authorise(self, environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or {}
		token = auth_payload.get("token")
		if not token:
			auth_header = _header(scope, "authorization")
			if auth_header and auth_header.lower().startswith("bearer "):
				token = auth_header.split(" ", 1)[1]
		if token:
			try:
				return verify_access_jwt(str(token))
			except HTTPException as exc:
				raise ValueError(exc.detail) from None
		if settings.is_dev():
			user_id = _clean(auth_payload.get("user_id")) or _clean(_header(scope, "x-user-id"))
			if user_id:
				return AuthenticatedUser(id=user_id)
		raise ValueError("missing_token")


class ChangeFeedRelay:
	"""Forward store changes and channel events to the namespace rooms."""

	def __init__(self, namespace: EventsNamespace) -> None:
		self._namespace = namespace
		self._subscription: Optional[Subscription] = None
		self._unlisten: Optional[Callable[[], None]] = None

	async def start(self, store: EventStore, chat: ChatProvider) -> None:
		await self.stop()
		self._subscription = await store.subscribe(None, self.on_change)
		self._unlisten = chat.listen(self.on_channel_event)

	async def stop(self) -> None:
		if self._subscription is not None:
			await self._subscription.close()
			self._subscription = None
		if self._unlisten is not None:
			self._unlisten()
			self._unlisten = None

	async def on_change(self, record: ChangeRecord) -> None:
		obs_metrics.feed_change(record.kind.value)
		payload = record.to_payload()
		rooms = [EventsNamespace.locality_room(None)]
		if record.city:
			rooms.append(EventsNamespace.locality_room(record.city))
		await self._namespace.emit("event.change", payload, room=rooms)

	async def on_channel_event(self, event: ChannelEvent) -> None:
		event_id = event_id_for(event.channel_id)
		if event_id is None:
			return
		await self._namespace.emit(
			"channel.change",
			{"event_id": event_id, "type": event.type, "user_id": event.user_id, "data": event.data},
			room=EventsNamespace.event_room(event_id),
		)
