"""Service container wiring the event store, messaging provider, and jobs."""

from __future__ import annotations

from typing import Optional

import asyncpg

from pinmeet.domain.events.chat import ChatProvider, MemoryChatProvider
from pinmeet.domain.events.lifecycle import ExpireSweepJob, RetentionSweepJob
from pinmeet.domain.events.postgres_store import PostgresEventStore
from pinmeet.domain.events.service import Clock, EventSagaService
from pinmeet.domain.events.store import EventStore, MemoryEventStore
from pinmeet.domain.events.stream_chat import StreamChatProvider
from pinmeet.settings import settings

_store: EventStore = MemoryEventStore()
_chat: ChatProvider = MemoryChatProvider()
_clock: Optional[Clock] = None
_service = EventSagaService(_store, _chat)
_expire_job = ExpireSweepJob(_store, _chat)
_retention_job = RetentionSweepJob(_store, _chat)


def _rebuild() -> None:
    global _service, _expire_job, _retention_job
    _service = EventSagaService(_store, _chat, clock=_clock)
    _expire_job = ExpireSweepJob(_store, _chat, clock=_clock)
    _retention_job = RetentionSweepJob(_store, _chat, clock=_clock)


def configure(
    *,
    store: Optional[EventStore] = None,
    chat: Optional[ChatProvider] = None,
    clock: Optional[Clock] = None,
) -> None:
    """Swap collaborators; tests pass fresh in-memory instances and a fake clock."""
    global _store, _chat, _clock
    if store is not None:
        _store = store
    if chat is not None:
        _chat = chat
    _clock = clock
    _rebuild()


def configure_postgres(pool: asyncpg.Pool) -> PostgresEventStore:
    store = PostgresEventStore(pool)
    configure(store=store, chat=_chat, clock=_clock)
    return store


def configure_stream() -> StreamChatProvider:
    chat = StreamChatProvider(
        api_key=settings.stream_api_key or "",
        api_secret=settings.stream_api_secret or "",
        base_url=settings.stream_base_url,
        channel_type=settings.stream_channel_type,
        timeout=settings.stream_timeout_seconds,
    )
    configure(store=_store, chat=chat, clock=_clock)
    return chat


def reset_memory() -> None:
    configure(store=MemoryEventStore(), chat=MemoryChatProvider())


def get_store() -> EventStore:
    return _store


def get_chat() -> ChatProvider:
    return _chat


def get_service() -> EventSagaService:
    return _service


def get_expire_job() -> ExpireSweepJob:
    return _expire_job


def get_retention_job() -> RetentionSweepJob:
    return _retention_job
