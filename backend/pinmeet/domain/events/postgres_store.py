"""PostGIS-backed event store.

The counter and change-feed triggers live in infra/migrations/0001_events.sql; this module
only reads `participant_count` and listens on the `event_changes` channel.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import asyncpg

from pinmeet.domain.events.errors import DuplicateParticipantError, StoreError
from pinmeet.domain.events.models import (
	ChangeKind,
	ChangeRecord,
	Event,
	EventCategory,
	EventStatus,
	GeoPoint,
	Participant,
	VerificationStatus,
)
from pinmeet.domain.events.store import ChangeHandler, EventStore, Subscription

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "event_changes"

_EVENT_COLUMNS = """
	id, host_id, title, category, description, lat, lon, city, status, verified_only,
	participant_count, meetup_point_label, maps_taps, arrivals, post_event_messages,
	expires_at, created_at
"""


def _as_datetime(value: Any) -> datetime:
	if isinstance(value, datetime):
		return value
	return datetime.fromisoformat(str(value))


def row_to_event(row: Mapping[str, Any]) -> Event:
	return Event(
		id=str(row["id"]),
		host_id=str(row["host_id"]),
		title=row["title"],
		category=EventCategory(row["category"]),
		lat=float(row["lat"]),
		lon=float(row["lon"]),
		status=EventStatus(row["status"]),
		expires_at=_as_datetime(row["expires_at"]),
		created_at=_as_datetime(row["created_at"]),
		verified_only=bool(row["verified_only"]),
		participant_count=int(row["participant_count"] or 0),
		description=row.get("description"),
		city=row.get("city"),
		meetup_point_label=row.get("meetup_point_label"),
		maps_taps=int(row.get("maps_taps") or 0),
		arrivals=int(row.get("arrivals") or 0),
		post_event_messages=int(row.get("post_event_messages") or 0),
	)


def change_from_notification(payload: str) -> Optional[ChangeRecord]:
	try:
		data = json.loads(payload)
		event = row_to_event(data["event"])
		kind = ChangeKind(data["kind"])
	except (ValueError, KeyError, TypeError):
		logger.warning("unparseable change notification", extra={"size": len(payload)})
		return None
	return ChangeRecord(kind=kind, event_id=event.id, city=event.city, event=event)


class _PostgresSubscription(Subscription):
	def __init__(self, store: "PostgresEventStore", token: int) -> None:
		self._store = store
		self._token = token

	async def close(self) -> None:
		await self._store._unsubscribe(self._token)


class PostgresEventStore(EventStore):
	def __init__(self, pool: asyncpg.Pool) -> None:
		self._pool = pool
		self._subscribers: Dict[int, tuple[Optional[str], ChangeHandler]] = {}
		self._tokens = itertools.count(1)
		self._listen_conn: Optional[asyncpg.Connection] = None
		self._queue: asyncio.Queue[ChangeRecord] = asyncio.Queue()
		self._dispatcher: Optional[asyncio.Task] = None
		self._listen_lock = asyncio.Lock()

	async def get_verification_status(self, user_id: str) -> VerificationStatus:
		async with self._pool.acquire() as conn:
			value = await conn.fetchval("SELECT verification_status FROM profiles WHERE id = $1", user_id)
		if not value:
			return VerificationStatus.NONE
		try:
			return VerificationStatus(value)
		except ValueError:
			return VerificationStatus.NONE

	async def count_active_hosted(self, host_id: str) -> int:
		async with self._pool.acquire() as conn:
			count = await conn.fetchval(
				"SELECT COUNT(*) FROM events WHERE host_id = $1 AND status = 'active'",
				host_id,
			)
		return int(count or 0)

	async def insert_event(self, event: Event) -> Event:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				INSERT INTO events (id, host_id, title, category, description, lat, lon, city, status,
					verified_only, expires_at, created_at)
				VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
				RETURNING {_EVENT_COLUMNS}
				""",
				event.id,
				event.host_id,
				event.title,
				event.category.value,
				event.description,
				event.lat,
				event.lon,
				event.city,
				event.status.value,
				event.verified_only,
				event.expires_at,
				event.created_at,
			)
		if row is None:  # pragma: no cover - INSERT ... RETURNING always yields a row
			raise StoreError("event_insert_returned_nothing")
		return row_to_event(dict(row))

	async def get_event(self, event_id: str) -> Optional[Event]:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1", event_id)
		return row_to_event(dict(row)) if row else None

	async def delete_event(self, event_id: str) -> bool:
		async with self._pool.acquire() as conn:
			result = await conn.execute("DELETE FROM events WHERE id = $1", event_id)
		return result.endswith(" 1")

	async def insert_participant(
		self,
		event_id: str,
		user_id: str,
		*,
		joined_at: datetime,
		require_active: bool = True,
	) -> Optional[Participant]:
		# Row lock on the event serialises joins with the expire sweep's conditional update.
		async with self._pool.acquire() as conn:
			async with conn.transaction():
				joinable = await conn.fetchval(
					"SELECT status = 'active' AND expires_at > $2 FROM events WHERE id = $1 FOR NO KEY UPDATE",
					event_id,
					joined_at,
				)
				if joinable is None or (require_active and not joinable):
					return None
				try:
					row = await conn.fetchrow(
						"""
						INSERT INTO event_participants (event_id, user_id, joined_at)
						VALUES ($1, $2, $3)
						RETURNING event_id, user_id, joined_at
						""",
						event_id,
						user_id,
						joined_at,
					)
				except asyncpg.UniqueViolationError as exc:  # type: ignore[attr-defined]
					raise DuplicateParticipantError(f"{event_id}:{user_id}") from exc
		return Participant(event_id=row["event_id"], user_id=row["user_id"], joined_at=row["joined_at"])

	async def get_participant(self, event_id: str, user_id: str) -> Optional[Participant]:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT event_id, user_id, joined_at FROM event_participants WHERE event_id = $1 AND user_id = $2",
				event_id,
				user_id,
			)
		if not row:
			return None
		return Participant(event_id=row["event_id"], user_id=row["user_id"], joined_at=row["joined_at"])

	async def delete_participant(self, event_id: str, user_id: str) -> bool:
		async with self._pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM event_participants WHERE event_id = $1 AND user_id = $2",
				event_id,
				user_id,
			)
		return result.endswith(" 1")

	async def list_participants(self, event_id: str) -> List[Participant]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT event_id, user_id, joined_at FROM event_participants
				WHERE event_id = $1 ORDER BY joined_at, user_id
				""",
				event_id,
			)
		return [Participant(event_id=r["event_id"], user_id=r["user_id"], joined_at=r["joined_at"]) for r in rows]

	async def mark_expired(self, event_id: str) -> bool:
		async with self._pool.acquire() as conn:
			result = await conn.execute(
				"UPDATE events SET status = 'expired' WHERE id = $1 AND status = 'active'",
				event_id,
			)
		return result.endswith(" 1")

	async def list_expirable(self, now: datetime, limit: int) -> List[Event]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_EVENT_COLUMNS} FROM events
				WHERE status = 'active' AND expires_at <= $1
				ORDER BY expires_at, id
				LIMIT $2
				""",
				now,
				limit,
			)
		return [row_to_event(dict(r)) for r in rows]

	async def list_purgeable(self, cutoff: datetime, limit: int) -> List[Event]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_EVENT_COLUMNS} FROM events
				WHERE status = 'expired' AND expires_at <= $1
				ORDER BY expires_at, id
				LIMIT $2
				""",
				cutoff,
				limit,
			)
		return [row_to_event(dict(r)) for r in rows]

	async def query_within_radius(self, point: GeoPoint, radius_m: float) -> List[Event]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_EVENT_COLUMNS} FROM events
				WHERE status = 'active'
					AND ST_DWithin(location, ST_SetSRID(ST_MakePoint($2, $1), 4326)::geography, $3)
				ORDER BY ST_Distance(location, ST_SetSRID(ST_MakePoint($2, $1), 4326)::geography), id
				""",
				point.lat,
				point.lon,
				float(radius_m),
			)
		return [row_to_event(dict(r)) for r in rows]

	async def list_for_user(self, user_id: str) -> List[Event]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_EVENT_COLUMNS} FROM events
				WHERE host_id = $1
					OR id IN (SELECT event_id FROM event_participants WHERE user_id = $1)
				ORDER BY created_at DESC, id DESC
				""",
				user_id,
			)
		return [row_to_event(dict(r)) for r in rows]

	async def set_meetup_label(self, event_id: str, label: Optional[str]) -> bool:
		async with self._pool.acquire() as conn:
			result = await conn.execute(
				"UPDATE events SET meetup_point_label = $2 WHERE id = $1",
				event_id,
				label,
			)
		return result.endswith(" 1")

	async def subscribe(self, locality: Optional[str], handler: ChangeHandler) -> Subscription:
		await self._ensure_listening()
		token = next(self._tokens)
		self._subscribers[token] = (locality, handler)
		return _PostgresSubscription(self, token)

	async def _unsubscribe(self, token: int) -> None:
		self._subscribers.pop(token, None)

	async def _ensure_listening(self) -> None:
		async with self._listen_lock:
			if self._listen_conn is not None:
				return
			conn = await self._pool.acquire()
			await conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
			self._listen_conn = conn
			self._dispatcher = asyncio.create_task(self._dispatch_loop())

	def _on_notify(self, _conn: asyncpg.Connection, _pid: int, _channel: str, payload: str) -> None:
		record = change_from_notification(payload)
		if record is not None:
			self._queue.put_nowait(record)

	async def _dispatch_loop(self) -> None:
		while True:
			record = await self._queue.get()
			for locality, handler in list(self._subscribers.values()):
				if locality is not None and locality != record.city:
					continue
				try:
					await handler(record)
				except Exception:
					logger.exception(
						"change feed handler failed",
						extra={"event_id": record.event_id, "kind": record.kind.value},
					)

	async def close(self) -> None:
		if self._dispatcher is not None:
			self._dispatcher.cancel()
			try:
				await self._dispatcher
			except asyncio.CancelledError:
				pass
			self._dispatcher = None
		if self._listen_conn is not None:
			try:
				await self._listen_conn.remove_listener(NOTIFY_CHANNEL, self._on_notify)
			finally:
				await self._pool.release(self._listen_conn)
				self._listen_conn = None
