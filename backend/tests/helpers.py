from datetime import datetime, timedelta, timezone
from typing import Optional

from pinmeet.domain.events.chat import channel_id_for
from pinmeet.domain.events.models import EventCategory, EventDraft, GeoPoint

BASE_TIME = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_draft(
	host_id: str,
	now,
	*,
	title: str = "Sunset beers on the pier",
	lat: float = 0.0,
	lon: float = 0.0,
	hours: float = 2,
	city: Optional[str] = "Lisbon",
	verified_only: bool = False,
	category: EventCategory = EventCategory.BEER,
) -> EventDraft:
	return EventDraft(
		host_id=host_id,
		title=title,
		category=category,
		point=GeoPoint(lat, lon),
		expires_at=now + timedelta(hours=hours),
		city=city,
		verified_only=verified_only,
	)


def fail_with(monkeypatch, target, name: str, exc: Optional[Exception] = None) -> None:
	async def _boom(*_args, **_kwargs):
		raise exc or RuntimeError(f"{name} failed")

	monkeypatch.setattr(target, name, _boom)


async def assert_membership_mirrors_participants(store, chat) -> None:
	for event_id in list(store.events):
		rows = {p.user_id for p in await store.list_participants(event_id)}
		assert rows == chat.members_of(channel_id_for(event_id)), event_id
		event = await store.get_event(event_id)
		assert event.participant_count == len(rows)
