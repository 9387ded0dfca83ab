import pytest

from pinmeet.infra.rate_limit import allow, quota_key
from pinmeet.infra.redis import redis_client


@pytest.mark.asyncio
async def test_rate_limit_allows_within_budget():
    assert await allow("nearby", "u5", limit=2, window_seconds=60)
    assert await allow("nearby", "u5", limit=2, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_blocks_when_budget_exhausted():
    await allow("nearby", "u6", limit=1, window_seconds=60)
    assert not await allow("nearby", "u6", limit=1, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_window_rolls_over():
    start = 7200.0
    for _ in range(3):
        assert await allow("meetup_point", "ev1", limit=3, window_seconds=3600, now=start)
    assert not await allow("meetup_point", "ev1", limit=3, window_seconds=3600, now=start + 10)
    assert await allow("meetup_point", "ev1", limit=3, window_seconds=3600, now=start + 3600)


@pytest.mark.asyncio
async def test_rate_limit_keys_are_per_actor():
    assert await allow("meetup_point", "ev1", limit=1, window_seconds=3600, now=0)
    assert await allow("meetup_point", "ev2", limit=1, window_seconds=3600, now=0)


@pytest.mark.asyncio
async def test_zero_limit_always_blocks():
    assert not await allow("nearby", "u7", limit=0)


@pytest.mark.asyncio
async def test_rate_limit_counter_expires_with_its_window():
    await allow("meetup_point", "ev3", limit=3, window_seconds=3600, now=3600 * 5 + 600)

    key = quota_key("meetup_point", "ev3", 3600, 5)
    assert await redis_client.get(key) == "1"
    assert 0 < await redis_client.ttl(key) <= 3000
