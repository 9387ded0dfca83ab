"""FastAPI + Socket.IO entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pinmeet.api import chat, events, internal_ops, ops
from pinmeet.api.errors import install_error_handlers
from pinmeet.api.middleware_request_id import RequestIdMiddleware
from pinmeet.domain.events import container
from pinmeet.domain.events.sockets import ChangeFeedRelay, EventsNamespace
from pinmeet.infra import postgres
from pinmeet.infra.scheduler import SweepScheduler
from pinmeet.obs import init as obs_init
from pinmeet.settings import settings

logger = logging.getLogger(__name__)


async def _run_expire_sweep() -> None:
	await container.get_expire_job().run_once()


async def _run_retention_sweep() -> None:
	await container.get_retention_job().run_once()


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.store_backend == "postgres":
		pool = await postgres.init_pool()
		container.configure_postgres(pool)
	if settings.chat_backend == "stream":
		container.configure_stream()
	relay = ChangeFeedRelay(events_namespace)
	await relay.start(container.get_store(), container.get_chat())
	app.state.feed_relay = relay
	scheduler: SweepScheduler | None = None
	if settings.scheduler_enabled:
		scheduler = SweepScheduler()
		scheduler.start()
		scheduler.schedule_every(
			"expire-sweep",
			_run_expire_sweep,
			minutes=settings.expire_sweep_interval_minutes,
		)
		scheduler.schedule_every(
			"retention-sweep",
			_run_retention_sweep,
			hours=settings.retention_sweep_interval_hours,
		)
		app.state.sweep_scheduler = scheduler
	logger.info(
		"pinmeet started",
		extra={"store": settings.store_backend, "chat": settings.chat_backend, "scheduler": settings.scheduler_enabled},
	)
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		await relay.stop()
		await container.get_store().close()
		await container.get_chat().close()
		await postgres.close_pool()


app = FastAPI(title="Pinmeet Events", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
events_namespace = EventsNamespace()
sio.register_namespace(events_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.add_middleware(RequestIdMiddleware)

app.include_router(events.router)
app.include_router(chat.router)
app.include_router(internal_ops.router)
app.include_router(ops.router)
