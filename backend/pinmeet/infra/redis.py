"""Shared Redis handle for quota counters and readiness checks.

Callers import `redis_client` once; `set_redis_client` swaps what it points at, which is
how the test suite installs fakeredis.
"""

from __future__ import annotations

import redis.asyncio as redis

from pinmeet.settings import settings


class RedisProxy:
	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self._client, item)


def build_client(url: str | None = None) -> redis.Redis:
	return redis.from_url(url or settings.redis_url, decode_responses=True)


redis_client: RedisProxy = RedisProxy(build_client())


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
