"""Sources of pins and change deliveries for a map session."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx
import socketio

from pinmeet.domain.events.models import ChangeRecord, GeoPoint
from pinmeet.domain.events.store import EventStore
from pinmeet.livesync.models import Pin, PinChange, Position

logger = logging.getLogger(__name__)

PinChangeHandler = Callable[[PinChange], Awaitable[None]]


class FeedSubscription(Protocol):
	async def close(self) -> None:
		...


class FeedSource(Protocol):
	async def query(self, position: Position, radius_m: float) -> List[Pin]:
		...

	async def subscribe(self, locality: Optional[str], handler: PinChangeHandler) -> FeedSubscription:
		...


class StoreFeedSource:
	"""Reads straight from an in-process EventStore."""

	def __init__(self, store: EventStore) -> None:
		self._store = store

	async def query(self, position: Position, radius_m: float) -> List[Pin]:
		events = await self._store.query_within_radius(GeoPoint(position.lat, position.lon), radius_m)
		return [Pin.from_event(event) for event in events]

	async def subscribe(self, locality: Optional[str], handler: PinChangeHandler) -> FeedSubscription:
		async def _relay(record: ChangeRecord) -> None:
			pin = Pin.from_event(record.event) if record.event is not None else None
			await handler(PinChange(kind=record.kind, event_id=record.event_id, pin=pin))

		return await self._store.subscribe(locality, _relay)


class _SocketSubscription:
	def __init__(self, client: socketio.AsyncClient) -> None:
		self._client = client

	async def close(self) -> None:
		if self._client.connected:
			await self._client.disconnect()


class RemoteFeedSource:
	"""Talks to a running API: HTTP for the radius query, Socket.IO for the feed.

	Each subscription owns its own socket so a replacement can be confirmed before the
	previous one is torn down.
	"""

	namespace = "/events"

	def __init__(
		self,
		base_url: str,
		token: str,
		*,
		http: Optional[httpx.AsyncClient] = None,
		client_factory: Callable[[], socketio.AsyncClient] = socketio.AsyncClient,
		timeout: float = 10.0,
	) -> None:
		self._base_url = base_url.rstrip("/")
		self._token = token
		self._http = http or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)
		self._client_factory = client_factory
		self._timeout = timeout

	@property
	def _headers(self) -> dict[str, str]:
		return {"Authorization": f"Bearer {self._token}"}

	async def query(self, position: Position, radius_m: float) -> List[Pin]:
		response = await self._http.get(
			"/events/nearby",
			params={"lat": position.lat, "lon": position.lon, "radius_m": int(radius_m)},
			headers=self._headers,
		)
		response.raise_for_status()
		return [Pin.from_payload(item) for item in response.json().get("items", [])]

	async def subscribe(self, locality: Optional[str], handler: PinChangeHandler) -> FeedSubscription:
		client = self._client_factory()

		async def _on_change(payload: dict) -> None:
			try:
				change = PinChange.from_payload(payload)
			except (KeyError, ValueError, TypeError):
				logger.warning("dropping malformed change payload")
				return
			await handler(change)

		client.on("event.change", _on_change, namespace=self.namespace)
		await client.connect(
			self._base_url,
			namespaces=[self.namespace],
			auth={"token": self._token},
			wait_timeout=self._timeout,
		)
		try:
			ack = await client.call(
				"feed_subscribe",
				{"locality": locality},
				namespace=self.namespace,
				timeout=self._timeout,
			)
		except Exception:
			await client.disconnect()
			raise
		if not isinstance(ack, dict) or not ack.get("ok"):
			await client.disconnect()
			raise ConnectionError(f"feed subscription refused: {ack!r}")
		return _SocketSubscription(client)

	async def aclose(self) -> None:
		await self._http.aclose()
