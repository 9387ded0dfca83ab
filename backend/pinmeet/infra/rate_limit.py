"""Fixed-window quotas kept in Redis (meetup-point edits, nearby queries)."""

from __future__ import annotations

import time
from typing import Optional

from pinmeet.infra.redis import redis_client

KEY_PREFIX = "pinmeet:quota"


def quota_key(kind: str, actor_id: str, window: int, slot: int) -> str:
	return f"{KEY_PREFIX}:{kind}:{actor_id}:{window}:{slot}"


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Count one use of `kind` by `actor_id`; False once `limit` is exceeded in this window."""
	if limit <= 0:
		return False
	now = time.time() if now is None else now
	window = max(1, int(window_seconds))
	slot = int(now // window)
	# the counter lives until its window closes
	ttl = max(1, (slot + 1) * window - int(now))
	key = quota_key(kind, actor_id, window, slot)
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, ttl)
		count, _ = await pipe.execute()
	return int(count) <= limit
