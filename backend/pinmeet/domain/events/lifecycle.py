"""Scheduled lifecycle sweeps: expire due events and purge old expired ones."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from pinmeet.domain.events.chat import ChatProvider, channel_id_for
from pinmeet.domain.events.errors import ChannelNotFoundError
from pinmeet.domain.events.service import Clock, utcnow
from pinmeet.domain.events.store import EventStore
from pinmeet.obs import metrics as obs_metrics
from pinmeet.settings import settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
	sweep: str
	selected: int = 0
	processed: int = 0
	skipped: int = 0
	failed: int = 0

	def to_payload(self) -> dict:
		return {
			"sweep": self.sweep,
			"selected": self.selected,
			"processed": self.processed,
			"skipped": self.skipped,
			"failed": self.failed,
		}


class _SweepJob:
	name = "sweep"

	def __init__(
		self,
		store: EventStore,
		chat: ChatProvider,
		*,
		clock: Optional[Clock] = None,
		batch_size: Optional[int] = None,
	) -> None:
		self.store = store
		self.chat = chat
		self._clock = clock or utcnow
		self._batch_size = batch_size or settings.sweep_batch_size

	async def run_once(self, now: Optional[datetime] = None) -> SweepResult:
		started = time.perf_counter()
		try:
			result = await self._sweep(now or self._clock())
		except Exception:
			obs_metrics.record_job_run(self.name, result="error", duration_seconds=time.perf_counter() - started)
			logger.exception("sweep failed", extra={"sweep": self.name})
			raise
		obs_metrics.record_job_run(self.name, result="success", duration_seconds=time.perf_counter() - started)
		if result.selected:
			logger.info("sweep finished", extra=result.to_payload())
		return result

	async def _sweep(self, now: datetime) -> SweepResult:  # pragma: no cover - abstract
		raise NotImplementedError


class ExpireSweepJob(_SweepJob):
	"""Freeze the chat then flip `status` to expired for every due active event.

	A failed item keeps `status=active` and is selected again on the next tick.
	"""

	name = "expire_sweep"

	async def _sweep(self, now: datetime) -> SweepResult:
		result = SweepResult(sweep=self.name)
		due = await self.store.list_expirable(now, self._batch_size)
		result.selected = len(due)
		for event in due:
			try:
				try:
					await self.chat.set_frozen(channel_id_for(event.id), True)
				except ChannelNotFoundError:
					logger.info("no channel to freeze", extra={"event_id": event.id})
				changed = await self.store.mark_expired(event.id)
			except Exception:
				result.failed += 1
				obs_metrics.sweep_item(self.name, "failed")
				logger.warning("expire deferred to next tick", exc_info=True, extra={"event_id": event.id})
				continue
			if changed:
				result.processed += 1
				obs_metrics.sweep_item(self.name, "expired")
			else:
				result.skipped += 1
				obs_metrics.sweep_item(self.name, "skipped")
		return result


class RetentionSweepJob(_SweepJob):
	"""Hard-delete chats and rows of events expired longer than the retention window."""

	name = "retention_sweep"

	def __init__(self, *args, retention_days: Optional[int] = None, **kwargs) -> None:
		super().__init__(*args, **kwargs)
		self._retention = timedelta(days=retention_days or settings.retention_days)

	async def _sweep(self, now: datetime) -> SweepResult:
		result = SweepResult(sweep=self.name)
		due = await self.store.list_purgeable(now - self._retention, self._batch_size)
		result.selected = len(due)
		for event in due:
			try:
				try:
					await self.chat.delete_channel(channel_id_for(event.id))
				except ChannelNotFoundError:
					logger.info("no channel to delete", extra={"event_id": event.id})
				deleted = await self.store.delete_event(event.id)
			except Exception:
				result.failed += 1
				obs_metrics.sweep_item(self.name, "failed")
				logger.warning("purge deferred to next tick", exc_info=True, extra={"event_id": event.id})
				continue
			if deleted:
				result.processed += 1
				obs_metrics.sweep_item(self.name, "purged")
			else:
				result.skipped += 1
				obs_metrics.sweep_item(self.name, "skipped")
		return result
