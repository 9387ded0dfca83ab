from datetime import timedelta

import pytest

from helpers import assert_membership_mirrors_participants, make_draft
from pinmeet.domain.events.chat import channel_id_for
from pinmeet.domain.events.lifecycle import ExpireSweepJob, RetentionSweepJob
from pinmeet.domain.events.models import EventStatus, GeoPoint, JoinStatus, RejectReason, VerificationStatus


async def _create(stack, host="host-1", **kwargs):
    outcome = await stack.service.create_event(make_draft(host, stack.clock(), **kwargs))
    return outcome.event


@pytest.mark.asyncio
async def test_expire_sweep_ignores_events_not_yet_due(stack):
    event = await _create(stack)
    result = await stack.expire_job.run_once(now=event.expires_at - timedelta(seconds=1))

    assert result.selected == 0
    stored = await stack.store.get_event(event.id)
    assert stored.status == EventStatus.ACTIVE


@pytest.mark.asyncio
async def test_expire_sweep_freezes_chat_and_flips_status(stack):
    event = await _create(stack)
    result = await stack.expire_job.run_once(now=event.expires_at)

    assert result.to_payload() == {
        "sweep": "expire_sweep",
        "selected": 1,
        "processed": 1,
        "skipped": 0,
        "failed": 0,
    }
    stored = await stack.store.get_event(event.id)
    assert stored.status == EventStatus.EXPIRED
    assert stack.chat.channels[channel_id_for(event.id)].frozen is True
    assert await stack.store.query_within_radius(GeoPoint(0.0, 0.0), 5000) == []


@pytest.mark.asyncio
async def test_expire_sweep_is_idempotent(stack):
    event = await _create(stack)
    await stack.expire_job.run_once(now=event.expires_at)
    second = await stack.expire_job.run_once(now=event.expires_at + timedelta(minutes=5))

    assert second.selected == 0
    stored = await stack.store.get_event(event.id)
    assert stored.status == EventStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_sweep_tolerates_missing_channel(stack):
    event = await _create(stack)
    del stack.chat.channels[channel_id_for(event.id)]

    result = await stack.expire_job.run_once(now=event.expires_at)
    assert result.processed == 1
    stored = await stack.store.get_event(event.id)
    assert stored.status == EventStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_sweep_defers_failed_item_to_next_tick(stack, monkeypatch):
    stack.store.set_verification_status("host-1", VerificationStatus.VERIFIED)
    first = await _create(stack)
    second = await _create(stack, title="Second meetup of the day")
    original = stack.chat.set_frozen

    async def flaky(channel_id, frozen):
        if channel_id == channel_id_for(first.id):
            raise RuntimeError("provider timeout")
        await original(channel_id, frozen)

    monkeypatch.setattr(stack.chat, "set_frozen", flaky)
    result = await stack.expire_job.run_once(now=first.expires_at)

    assert (result.selected, result.processed, result.failed) == (2, 1, 1)
    assert (await stack.store.get_event(first.id)).status == EventStatus.ACTIVE
    assert (await stack.store.get_event(second.id)).status == EventStatus.EXPIRED

    monkeypatch.setattr(stack.chat, "set_frozen", original)
    retry = await stack.expire_job.run_once(now=first.expires_at + timedelta(minutes=5))
    assert retry.processed == 1
    assert (await stack.store.get_event(first.id)).status == EventStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_sweep_respects_batch_size(stack):
    stack.store.set_verification_status("host-1", VerificationStatus.VERIFIED)
    for i in range(3):
        await _create(stack, title=f"Board games table {i}")
    job = ExpireSweepJob(stack.store, stack.chat, clock=stack.clock, batch_size=2)

    first = await job.run_once(now=stack.clock() + timedelta(hours=3))
    second = await job.run_once(now=stack.clock() + timedelta(hours=3))
    assert (first.processed, second.processed) == (2, 1)


@pytest.mark.asyncio
async def test_retention_sweep_purges_after_retention_window(stack):
    event = await _create(stack)
    await stack.service.join_event("guest-1", event.id)
    await stack.expire_job.run_once(now=event.expires_at)

    early = await stack.retention_job.run_once(now=event.expires_at + timedelta(days=6, hours=23))
    assert early.selected == 0
    assert event.id in stack.store.events

    result = await stack.retention_job.run_once(now=event.expires_at + timedelta(days=7))
    assert result.processed == 1
    assert event.id not in stack.store.events
    assert event.id not in stack.store.participants
    assert channel_id_for(event.id) not in stack.chat.channels


@pytest.mark.asyncio
async def test_retention_sweep_leaves_active_events(stack):
    event = await _create(stack, hours=26)
    result = await stack.retention_job.run_once(now=stack.clock() + timedelta(days=30))

    # still active because the expire sweep never ran
    assert result.selected == 0
    assert event.id in stack.store.events


@pytest.mark.asyncio
async def test_retention_sweep_purges_reopened_chat(stack):
    event = await _create(stack)
    await stack.expire_job.run_once(now=event.expires_at)
    await stack.service.reopen_event("host-1", event.id)

    result = await stack.retention_job.run_once(now=event.expires_at + timedelta(days=7))
    assert result.processed == 1
    assert channel_id_for(event.id) not in stack.chat.channels


@pytest.mark.asyncio
async def test_retention_window_is_configurable(stack):
    event = await _create(stack)
    await stack.expire_job.run_once(now=event.expires_at)
    job = RetentionSweepJob(stack.store, stack.chat, clock=stack.clock, retention_days=1)

    result = await job.run_once(now=event.expires_at + timedelta(days=1))
    assert result.processed == 1


@pytest.mark.asyncio
async def test_event_lifecycle_end_to_end(stack, clock):
    stack.store.set_verification_status("guest-2", VerificationStatus.VERIFIED)
    event = await _create(stack, verified_only=True, hours=2)

    assert (await stack.service.join_event("guest-1", event.id)).reason == RejectReason.VERIFIED_ONLY
    assert (await stack.service.join_event("guest-2", event.id)).status == JoinStatus.JOINED
    await assert_membership_mirrors_participants(stack.store, stack.chat)

    clock.advance(hours=2)
    await stack.expire_job.run_once()
    late = await stack.service.join_event("guest-3", event.id)
    assert late.reason == RejectReason.EVENT_EXPIRED
    assert stack.chat.channels[channel_id_for(event.id)].frozen is True

    mine = await stack.service.list_mine("guest-2")
    assert [e.id for e in mine.past] == [event.id]

    clock.advance(days=7)
    await stack.retention_job.run_once()
    assert stack.store.events == {}
    assert stack.chat.channels == {}
    assert (await stack.service.list_mine("guest-2")).past == []


@pytest.mark.asyncio
async def test_create_join_expire_purge_at_origin(stack, clock):
    event = await _create(stack, lat=0.0, lon=0.0, hours=2)
    assert (await stack.service.join_event("guest-1", event.id)).status == JoinStatus.JOINED
    assert (await stack.store.get_event(event.id)).participant_count == 2

    clock.advance(hours=2, seconds=1)
    await stack.expire_job.run_once()
    assert (await stack.store.get_event(event.id)).status == EventStatus.EXPIRED
    assert stack.chat.channels[channel_id_for(event.id)].frozen is True

    clock.advance(days=8)
    result = await stack.retention_job.run_once()
    assert result.processed == 1
    assert await stack.store.get_event(event.id) is None
    assert await stack.store.list_participants(event.id) == []
    assert channel_id_for(event.id) not in stack.chat.channels
