"""Saga orchestration for event create / join / leave / delete and host actions.

Every saga writes the relational store first and the messaging provider second. When a
later step fails, the earlier writes are reversed once (best effort) and the failure is
surfaced; there is no retry loop.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Tuple

import ulid

from pinmeet.domain.events import errors
from pinmeet.domain.events.chat import ChatProvider, channel_id_for
from pinmeet.domain.events.models import (
	CreateOutcome,
	CreateStatus,
	Event,
	EventDraft,
	EventStatus,
	GeoPoint,
	JoinOutcome,
	JoinStatus,
	MeetupPoint,
	MyEvents,
	RejectReason,
	VerificationStatus,
)
from pinmeet.domain.events.store import EventStore
from pinmeet.infra import rate_limit
from pinmeet.obs import metrics as obs_metrics
from pinmeet.settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RateLimiter = Callable[..., Awaitable[bool]]


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class EventSagaService:
	def __init__(
		self,
		store: EventStore,
		chat: ChatProvider,
		*,
		clock: Optional[Clock] = None,
		limiter: Optional[RateLimiter] = None,
	) -> None:
		self.store = store
		self.chat = chat
		self._clock = clock or utcnow
		self._allow = limiter or rate_limit.allow

	def now(self) -> datetime:
		return self._clock()

	async def _compensate(self, saga: str, step: str, action: Awaitable[object], *, event_id: str) -> bool:
		try:
			await action
		except Exception:
			obs_metrics.saga_compensation(saga, step, ok=False)
			logger.error(
				"saga compensation failed",
				exc_info=True,
				extra={"saga": saga, "step": step, "event_id": event_id},
			)
			return False
		obs_metrics.saga_compensation(saga, step, ok=True)
		logger.warning("saga compensated", extra={"saga": saga, "step": step, "event_id": event_id})
		return True

	async def _load(self, event_id: str) -> Event:
		event = await self.store.get_event(event_id)
		if event is None:
			raise errors.EventNotFoundError()
		return event

	async def _load_hosted(self, user_id: str, event_id: str) -> Event:
		event = await self._load(event_id)
		if not event.is_host(user_id):
			raise errors.NotHostError()
		return event

	async def _is_verified(self, user_id: str) -> bool:
		status = await self.store.get_verification_status(user_id)
		return status == VerificationStatus.VERIFIED

	def validate_draft(self, draft: EventDraft, now: datetime) -> EventDraft:
		title = (draft.title or "").strip()
		if not settings.event_title_min_length <= len(title) <= settings.event_title_max_length:
			raise errors.InvalidEventError("invalid_title")
		if not draft.point.is_valid():
			raise errors.InvalidEventError("invalid_location")
		expires_at = draft.expires_at
		if expires_at.tzinfo is None:
			expires_at = expires_at.replace(tzinfo=timezone.utc)
		earliest = now + timedelta(minutes=settings.event_min_lead_minutes)
		latest = now + timedelta(hours=settings.event_max_lead_hours)
		if not earliest < expires_at <= latest:
			raise errors.InvalidEventError("invalid_expiry")
		description = (draft.description or "").strip() or None
		city = (draft.city or "").strip() or None
		draft.title = title
		draft.expires_at = expires_at
		draft.description = description
		draft.city = city
		return draft

	async def create_event(self, draft: EventDraft) -> CreateOutcome:
		now = self.now()
		draft = self.validate_draft(draft, now)
		host_id = draft.host_id
		if not await self._is_verified(host_id):
			hosted = await self.store.count_active_hosted(host_id)
			if hosted >= settings.free_active_event_limit:
				obs_metrics.saga_outcome("create", "limit_reached")
				return CreateOutcome(status=CreateStatus.LIMIT_REACHED)

		event = Event(
			id=str(ulid.new()),
			host_id=host_id,
			title=draft.title,
			category=draft.category,
			lat=draft.point.lat,
			lon=draft.point.lon,
			status=EventStatus.ACTIVE,
			expires_at=draft.expires_at,
			created_at=now,
			verified_only=draft.verified_only,
			participant_count=0,
			description=draft.description,
			city=draft.city,
		)
		try:
			event = await self.store.insert_event(event)
		except Exception as exc:
			obs_metrics.saga_outcome("create", "failed")
			logger.error("event insert failed", exc_info=True, extra={"host_id": host_id})
			raise errors.StoreWriteError("event_insert_failed") from exc

		try:
			participant = await self.store.insert_participant(event.id, host_id, joined_at=now)
			if participant is None:
				raise errors.StoreError("event_vanished")
		except Exception as exc:
			await self._compensate("create", "delete_event", self.store.delete_event(event.id), event_id=event.id)
			obs_metrics.saga_outcome("create", "failed")
			raise errors.StoreWriteError("host_join_failed") from exc

		channel_id = channel_id_for(event.id)
		try:
			await self.chat.create_channel(channel_id, created_by=host_id, members=[host_id], name=event.title)
		except Exception as exc:
			await self._compensate(
				"create",
				"delete_participant",
				self.store.delete_participant(event.id, host_id),
				event_id=event.id,
			)
			await self._compensate("create", "delete_event", self.store.delete_event(event.id), event_id=event.id)
			obs_metrics.saga_outcome("create", "failed")
			raise errors.ChatSyncError("chat_initialization_failed") from exc

		obs_metrics.saga_outcome("create", "created")
		logger.info("event created", extra={"event_id": event.id, "host_id": host_id})
		created = await self.store.get_event(event.id)
		return CreateOutcome(status=CreateStatus.CREATED, event=created or event, channel_id=channel_id)

	async def join_event(self, user_id: str, event_id: str) -> JoinOutcome:
		event = await self._load(event_id)
		channel_id = channel_id_for(event_id)
		if not event.is_joinable(self.now()):
			return self._rejected(event_id, RejectReason.EVENT_EXPIRED)
		if event.verified_only and not event.is_host(user_id) and not await self._is_verified(user_id):
			return self._rejected(event_id, RejectReason.VERIFIED_ONLY)

		inserted = False
		existing = await self.store.get_participant(event_id, user_id)
		if existing is None:
			try:
				participant = await self.store.insert_participant(event_id, user_id, joined_at=self.now())
			except errors.DuplicateParticipantError:
				participant = None
				inserted = False
			except Exception as exc:
				obs_metrics.saga_outcome("join", "failed")
				raise errors.StoreWriteError("participant_insert_failed") from exc
			else:
				if participant is None:
					# The conditional insert lost a race with the expire sweep or a delete.
					if await self.store.get_event(event_id) is None:
						raise errors.EventNotFoundError()
					return self._rejected(event_id, RejectReason.EVENT_EXPIRED)
				inserted = True

		try:
			await self.chat.add_members(channel_id, [user_id])
		except Exception as exc:
			if inserted:
				await self._compensate(
					"join",
					"delete_participant",
					self.store.delete_participant(event_id, user_id),
					event_id=event_id,
				)
				obs_metrics.saga_outcome("join", "failed")
				raise errors.ChatSyncError("chat_join_failed") from exc
			logger.warning(
				"membership repair failed for existing participant",
				exc_info=True,
				extra={"event_id": event_id, "user_id": user_id},
			)

		status = JoinStatus.JOINED if inserted else JoinStatus.ALREADY_MEMBER
		obs_metrics.saga_outcome("join", status.value)
		return JoinOutcome(status=status, event_id=event_id, channel_id=channel_id)

	def _rejected(self, event_id: str, reason: RejectReason) -> JoinOutcome:
		obs_metrics.saga_outcome("join", reason.value)
		return JoinOutcome(status=JoinStatus.REJECTED, event_id=event_id, reason=reason)

	async def leave_event(self, user_id: str, event_id: str) -> bool:
		event = await self._load(event_id)
		if event.is_host(user_id):
			raise errors.EventError("host_cannot_leave", status_code=409)
		return await self._detach("leave", event, user_id)

	async def remove_participant(self, host_id: str, event_id: str, user_id: str) -> bool:
		event = await self._load_hosted(host_id, event_id)
		if event.is_host(user_id):
			raise errors.EventError("host_cannot_leave", status_code=409)
		return await self._detach("remove", event, user_id)

	async def _detach(self, saga: str, event: Event, user_id: str) -> bool:
		participant = await self.store.get_participant(event.id, user_id)
		if participant is None:
			return False
		try:
			removed = await self.store.delete_participant(event.id, user_id)
		except Exception as exc:
			obs_metrics.saga_outcome(saga, "failed")
			raise errors.StoreWriteError("participant_delete_failed") from exc
		if not removed:
			return False
		try:
			await self.chat.remove_members(channel_id_for(event.id), [user_id])
		except errors.ChannelNotFoundError:
			logger.info("channel already gone on %s", saga, extra={"event_id": event.id})
		except Exception as exc:
			await self._compensate(
				saga,
				"restore_participant",
				self.store.insert_participant(
					event.id,
					user_id,
					joined_at=participant.joined_at,
					require_active=False,
				),
				event_id=event.id,
			)
			obs_metrics.saga_outcome(saga, "failed")
			raise errors.ChatSyncError(f"chat_{saga}_failed") from exc
		obs_metrics.saga_outcome(saga, "removed")
		return True

	async def delete_event(self, user_id: str, event_id: str) -> None:
		event = await self._load_hosted(user_id, event_id)
		try:
			await self.chat.delete_channel(channel_id_for(event.id))
		except errors.ChannelNotFoundError:
			logger.info("channel missing on delete", extra={"event_id": event.id})
		except Exception as exc:
			obs_metrics.saga_outcome("delete", "failed")
			raise errors.ChatSyncError("chat_delete_failed") from exc
		try:
			await self.store.delete_event(event.id)
		except Exception as exc:
			obs_metrics.saga_outcome("delete", "failed")
			logger.error("event delete failed after channel removal", exc_info=True, extra={"event_id": event.id})
			raise errors.StoreWriteError("event_delete_failed") from exc
		obs_metrics.saga_outcome("delete", "deleted")
		logger.info("event deleted", extra={"event_id": event.id})

	async def reopen_event(self, user_id: str, event_id: str) -> bool:
		"""Unfreeze the event chat. Status and participant rules are unchanged."""
		event = await self._load_hosted(user_id, event_id)
		try:
			await self.chat.set_frozen(channel_id_for(event.id), False)
		except errors.ChannelNotFoundError:
			return False
		except Exception as exc:
			raise errors.ChatSyncError("chat_reopen_failed") from exc
		return True

	async def update_meetup_point(self, user_id: str, event_id: str, point: MeetupPoint) -> Event:
		event = await self._load_hosted(user_id, event_id)
		if not event.is_active():
			raise errors.EventClosedError()
		label = point.label.strip()
		if not label:
			raise errors.InvalidEventError("invalid_meetup_point")
		if point.lat is not None and point.lon is not None and not GeoPoint(point.lat, point.lon).is_valid():
			raise errors.InvalidEventError("invalid_meetup_point")
		allowed = await self._allow(
			"meetup_point",
			event.id,
			limit=settings.meetup_point_updates_per_hour,
			window_seconds=3600,
			now=self.now().timestamp(),
		)
		if not allowed:
			obs_metrics.rate_limited("meetup_point")
			raise errors.RateLimitedError()

		previous = event.meetup_point_label
		try:
			await self.store.set_meetup_label(event.id, label)
		except Exception as exc:
			raise errors.StoreWriteError("meetup_point_write_failed") from exc
		metadata = MeetupPoint(label=label, lat=point.lat, lon=point.lon).to_metadata()
		try:
			await self.chat.update_metadata(channel_id_for(event.id), {"meetup_point": metadata})
		except Exception as exc:
			await self._compensate(
				"meetup_point",
				"restore_label",
				self.store.set_meetup_label(event.id, previous),
				event_id=event.id,
			)
			raise errors.ChatSyncError("chat_metadata_failed") from exc
		return await self._load(event.id)

	async def list_nearby(self, user_id: str, point: GeoPoint, radius_m: Optional[int] = None) -> list[Event]:
		if not point.is_valid():
			raise errors.InvalidEventError("invalid_location")
		allowed = await self._allow(
			"nearby",
			user_id,
			limit=settings.nearby_requests_per_minute,
			window_seconds=60,
		)
		if not allowed:
			obs_metrics.rate_limited("nearby")
			raise errors.RateLimitedError()
		radius = radius_m or settings.event_radius_m
		return await self.store.query_within_radius(point, radius)

	async def list_mine(self, user_id: str) -> MyEvents:
		mine = MyEvents()
		for event in await self.store.list_for_user(user_id):
			(mine.active if event.is_active() else mine.past).append(event)
		return mine

	async def get_event(self, user_id: str, event_id: str) -> Tuple[Event, bool]:
		event = await self._load(event_id)
		member = await self.store.get_participant(event_id, user_id)
		return event, member is not None

	def chat_token(self, user_id: str) -> str:
		return self.chat.create_user_token(user_id)
