"""Event/participant persistence and the locality-scoped change feed."""

from __future__ import annotations

import abc
import asyncio
import itertools
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from pinmeet.domain.events.errors import DuplicateParticipantError
from pinmeet.domain.events.models import (
	ChangeKind,
	ChangeRecord,
	Event,
	EventStatus,
	GeoPoint,
	Participant,
	VerificationStatus,
)
from pinmeet.geo import haversine_m

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeRecord], Awaitable[None]]


class Subscription(abc.ABC):
	"""Handle for one change-feed subscription."""

	@abc.abstractmethod
	async def close(self) -> None:
		...


class EventStore(abc.ABC):
	"""Relational store contract.

	Implementations own `participant_count`: inserting a participant increments it and
	deleting one decrements it. Callers never write the column.
	"""

	@abc.abstractmethod
	async def get_verification_status(self, user_id: str) -> VerificationStatus:
		...

	@abc.abstractmethod
	async def count_active_hosted(self, host_id: str) -> int:
		...

	@abc.abstractmethod
	async def insert_event(self, event: Event) -> Event:
		...

	@abc.abstractmethod
	async def get_event(self, event_id: str) -> Optional[Event]:
		...

	@abc.abstractmethod
	async def delete_event(self, event_id: str) -> bool:
		"""Delete the event row; participants cascade."""

	@abc.abstractmethod
	async def insert_participant(
		self,
		event_id: str,
		user_id: str,
		*,
		joined_at: datetime,
		require_active: bool = True,
	) -> Optional[Participant]:
		"""Insert a participant row.

		Returns None when the event is missing or, with `require_active`, no longer active
		or already past `expires_at` at `joined_at`. Raises DuplicateParticipantError on a uniqueness conflict.
		"""

	@abc.abstractmethod
	async def get_participant(self, event_id: str, user_id: str) -> Optional[Participant]:
		...

	@abc.abstractmethod
	async def delete_participant(self, event_id: str, user_id: str) -> bool:
		...

	@abc.abstractmethod
	async def list_participants(self, event_id: str) -> List[Participant]:
		...

	@abc.abstractmethod
	async def mark_expired(self, event_id: str) -> bool:
		"""Flip active -> expired. Returns False when the row was not active."""

	@abc.abstractmethod
	async def list_expirable(self, now: datetime, limit: int) -> List[Event]:
		...

	@abc.abstractmethod
	async def list_purgeable(self, cutoff: datetime, limit: int) -> List[Event]:
		...

	@abc.abstractmethod
	async def query_within_radius(self, point: GeoPoint, radius_m: float) -> List[Event]:
		"""Active events within `radius_m`, nearest first."""

	@abc.abstractmethod
	async def list_for_user(self, user_id: str) -> List[Event]:
		"""Events the user hosts or participates in, newest first."""

	@abc.abstractmethod
	async def set_meetup_label(self, event_id: str, label: Optional[str]) -> bool:
		...

	@abc.abstractmethod
	async def subscribe(self, locality: Optional[str], handler: ChangeHandler) -> Subscription:
		"""Deliver changes for events in `locality` (all events when None)."""

	async def close(self) -> None:
		return None


class _MemorySubscription(Subscription):
	def __init__(self, store: "MemoryEventStore", token: int) -> None:
		self._store = store
		self._token = token

	async def close(self) -> None:
		self._store._subscribers.pop(self._token, None)


class MemoryEventStore(EventStore):
	"""In-process store used in development and tests."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.events: Dict[str, Event] = {}
		self.participants: Dict[str, Dict[str, Participant]] = {}
		self.profiles: Dict[str, VerificationStatus] = {}
		self._subscribers: Dict[int, tuple[Optional[str], ChangeHandler]] = {}
		self._tokens = itertools.count(1)

	def set_verification_status(self, user_id: str, status: VerificationStatus) -> None:
		self.profiles[user_id] = status

	async def get_verification_status(self, user_id: str) -> VerificationStatus:
		return self.profiles.get(user_id, VerificationStatus.NONE)

	async def count_active_hosted(self, host_id: str) -> int:
		async with self._lock:
			return sum(
				1 for event in self.events.values() if event.host_id == host_id and event.is_active()
			)

	async def insert_event(self, event: Event) -> Event:
		async with self._lock:
			stored = event.copy()
			stored.participant_count = 0
			self.events[stored.id] = stored
			self.participants[stored.id] = {}
			record = ChangeRecord(ChangeKind.INSERT, stored.id, stored.city, stored.copy())
		await self._publish(record)
		return stored.copy()

	async def get_event(self, event_id: str) -> Optional[Event]:
		async with self._lock:
			event = self.events.get(event_id)
			return event.copy() if event else None

	async def delete_event(self, event_id: str) -> bool:
		async with self._lock:
			event = self.events.pop(event_id, None)
			self.participants.pop(event_id, None)
			if event is None:
				return False
			record = ChangeRecord(ChangeKind.DELETE, event.id, event.city, event.copy())
		await self._publish(record)
		return True

	async def insert_participant(
		self,
		event_id: str,
		user_id: str,
		*,
		joined_at: datetime,
		require_active: bool = True,
	) -> Optional[Participant]:
		async with self._lock:
			event = self.events.get(event_id)
			if event is None or (require_active and not event.is_joinable(joined_at)):
				return None
			members = self.participants.setdefault(event_id, {})
			if user_id in members:
				raise DuplicateParticipantError(f"{event_id}:{user_id}")
			participant = Participant(event_id=event_id, user_id=user_id, joined_at=joined_at)
			members[user_id] = participant
			event.participant_count += 1
			record = ChangeRecord(ChangeKind.UPDATE, event.id, event.city, event.copy())
		await self._publish(record)
		return participant

	async def get_participant(self, event_id: str, user_id: str) -> Optional[Participant]:
		async with self._lock:
			return self.participants.get(event_id, {}).get(user_id)

	async def delete_participant(self, event_id: str, user_id: str) -> bool:
		async with self._lock:
			removed = self.participants.get(event_id, {}).pop(user_id, None)
			event = self.events.get(event_id)
			if removed is None or event is None:
				return False
			event.participant_count -= 1
			record = ChangeRecord(ChangeKind.UPDATE, event.id, event.city, event.copy())
		await self._publish(record)
		return True

	async def list_participants(self, event_id: str) -> List[Participant]:
		async with self._lock:
			members = self.participants.get(event_id, {})
			return sorted(members.values(), key=lambda p: (p.joined_at, p.user_id))

	async def mark_expired(self, event_id: str) -> bool:
		async with self._lock:
			event = self.events.get(event_id)
			if event is None or event.status != EventStatus.ACTIVE:
				return False
			event.status = EventStatus.EXPIRED
			record = ChangeRecord(ChangeKind.UPDATE, event.id, event.city, event.copy())
		await self._publish(record)
		return True

	async def list_expirable(self, now: datetime, limit: int) -> List[Event]:
		async with self._lock:
			due = [e for e in self.events.values() if e.is_active() and e.expires_at <= now]
			due.sort(key=lambda e: (e.expires_at, e.id))
			return [e.copy() for e in due[:limit]]

	async def list_purgeable(self, cutoff: datetime, limit: int) -> List[Event]:
		async with self._lock:
			due = [
				e
				for e in self.events.values()
				if e.status == EventStatus.EXPIRED and e.expires_at <= cutoff
			]
			due.sort(key=lambda e: (e.expires_at, e.id))
			return [e.copy() for e in due[:limit]]

	async def query_within_radius(self, point: GeoPoint, radius_m: float) -> List[Event]:
		async with self._lock:
			hits: list[tuple[float, Event]] = []
			for event in self.events.values():
				if not event.is_active():
					continue
				distance = haversine_m(point.lat, point.lon, event.lat, event.lon)
				if distance <= radius_m:
					hits.append((distance, event.copy()))
			hits.sort(key=lambda item: (item[0], item[1].id))
			return [event for _, event in hits]

	async def list_for_user(self, user_id: str) -> List[Event]:
		async with self._lock:
			mine = [
				event.copy()
				for event in self.events.values()
				if event.host_id == user_id or user_id in self.participants.get(event.id, {})
			]
		mine.sort(key=lambda e: (e.created_at, e.id), reverse=True)
		return mine

	async def set_meetup_label(self, event_id: str, label: Optional[str]) -> bool:
		async with self._lock:
			event = self.events.get(event_id)
			if event is None:
				return False
			event.meetup_point_label = label
			record = ChangeRecord(ChangeKind.UPDATE, event.id, event.city, event.copy())
		await self._publish(record)
		return True

	async def subscribe(self, locality: Optional[str], handler: ChangeHandler) -> Subscription:
		token = next(self._tokens)
		self._subscribers[token] = (locality, handler)
		return _MemorySubscription(self, token)

	async def _publish(self, record: ChangeRecord) -> None:
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
