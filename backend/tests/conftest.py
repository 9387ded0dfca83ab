import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("INTERNAL_SECRET", "test-internal-secret")

from pinmeet.domain.events import container
from pinmeet.domain.events.chat import MemoryChatProvider
from pinmeet.domain.events.lifecycle import ExpireSweepJob, RetentionSweepJob
from pinmeet.domain.events.service import EventSagaService
from pinmeet.domain.events.store import MemoryEventStore
from pinmeet.infra import postgres
from pinmeet.main import app
from pinmeet.settings import settings

from helpers import BASE_TIME


class FakeClock:
	def __init__(self, start: datetime = BASE_TIME) -> None:
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


@dataclass
class EventStack:
	store: MemoryEventStore
	chat: MemoryChatProvider
	clock: FakeClock

	@property
	def service(self) -> EventSagaService:
		return container.get_service()

	@property
	def expire_job(self) -> ExpireSweepJob:
		return container.get_expire_job()

	@property
	def retention_job(self) -> RetentionSweepJob:
		return container.get_retention_job()


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from pinmeet.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id, which is only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture(autouse=True)
def stack(clock) -> EventStack:
	store = MemoryEventStore()
	chat = MemoryChatProvider()
	container.configure(store=store, chat=chat, clock=clock)
	try:
		yield EventStack(store=store, chat=chat, clock=clock)
	finally:
		container.reset_memory()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
