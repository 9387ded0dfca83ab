"""Map session: one radius query plus one locality subscription per position.

The session keeps at most one live subscription. Each refresh subscribes first and then
queries, buffering deliveries until the snapshot is in place. The replacement is confirmed
before the previous one is closed, and deliveries tagged with an older generation are
dropped. A failed query or subscription leaves the last good pins in place and is retried
on the next movement tick or `resume()`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from pinmeet.geo import haversine_m
from pinmeet.livesync.cluster import ClusterIndex, ClusterNode, cluster_viewport
from pinmeet.livesync.feed import FeedSource, FeedSubscription
from pinmeet.livesync.filter import RadiusFilter
from pinmeet.livesync.models import Pin, PinChange, Position, Viewport
from pinmeet.livesync.pins import PinSet
from pinmeet.settings import settings

logger = logging.getLogger(__name__)

REQUERY_THRESHOLD_M = 500.0
SAMPLE_INTERVAL_S = 30.0
SAMPLE_DISTANCE_M = 100.0

Geocoder = Callable[[Position], Awaitable[Optional[str]]]
Listener = Callable[["MapSession"], None]


def _distance(a: Position, b: Position) -> float:
	return haversine_m(a.lat, a.lon, b.lat, b.lon)


class MapSession:
	def __init__(
		self,
		source: FeedSource,
		*,
		geocoder: Optional[Geocoder] = None,
		radius_m: Optional[float] = None,
		requery_threshold_m: float = REQUERY_THRESHOLD_M,
		sample_interval_s: float = SAMPLE_INTERVAL_S,
		sample_distance_m: float = SAMPLE_DISTANCE_M,
		clock: Callable[[], float] = time.monotonic,
		cluster_index: Optional[ClusterIndex] = None,
		on_update: Optional[Listener] = None,
	) -> None:
		self._source = source
		self._geocoder = geocoder
		self.radius_m = float(radius_m or settings.event_radius_m)
		self._requery_threshold_m = requery_threshold_m
		self._sample_interval_s = sample_interval_s
		self._sample_distance_m = sample_distance_m
		self._clock = clock
		self._index = cluster_index or ClusterIndex()
		self._on_update = on_update

		self.pins = PinSet()
		self.clusters: List[ClusterNode] = []
		self.viewport: Optional[Viewport] = None
		self.locality: Optional[str] = None
		self.query_position: Optional[Position] = None
		self.needs_retry = False

		self._filter: Optional[RadiusFilter] = None
		self._subscription: Optional[FeedSubscription] = None
		self._generation = 0
		self._pending_generation: Optional[int] = None
		self._pending: List[PinChange] = []
		self._last_sample: Optional[tuple[float, Position]] = None
		self._last_position: Optional[Position] = None
		self._lock = asyncio.Lock()
		self._tracker: Optional[asyncio.Task] = None
		self._started = False
		self._stopped = False

	@property
	def subscribed(self) -> bool:
		return self._subscription is not None

	async def start(self, position: Position) -> bool:
		"""Resolve the locality once, then load pins and subscribe around `position`."""
		self._started = True
		self._stopped = False
		if self._geocoder is not None and self.locality is None:
			try:
				self.locality = await self._geocoder(position)
			except Exception:
				logger.warning("reverse geocode failed; subscribing without locality", exc_info=True)
		self._last_sample = (self._clock(), position)
		self._last_position = position
		return await self._refresh(position)

	async def update_position(self, position: Position) -> bool:
		"""Feed one location fix. Returns True when it triggered a re-query."""
		if not self._started or self._stopped:
			return False
		now = self._clock()
		if self._last_sample is not None:
			sampled_at, sampled_pos = self._last_sample
			if now - sampled_at < self._sample_interval_s and _distance(sampled_pos, position) < self._sample_distance_m:
				return False
		self._last_sample = (now, position)
		self._last_position = position
		moved_far = self.query_position is None or _distance(self.query_position, position) > self._requery_threshold_m
		if not (moved_far or self.needs_retry):
			return False
		return await self._refresh(position)

	async def resume(self) -> bool:
		"""Foreground hook: retry a failed query/subscription at the last known position."""
		if self._stopped or not self.needs_retry or self._last_position is None:
			return False
		return await self._refresh(self._last_position)

	def set_viewport(self, viewport: Viewport) -> None:
		self.viewport = viewport
		self._recluster()

	async def track(self, positions: AsyncIterator[Position]) -> None:
		async for position in positions:
			if self._stopped:
				break
			try:
				await self.update_position(position)
			except Exception:
				logger.exception("position update failed")

	def start_tracking(self, positions: AsyncIterator[Position]) -> asyncio.Task:
		if self._tracker is not None and not self._tracker.done():
			self._tracker.cancel()
		self._tracker = asyncio.create_task(self.track(positions))
		return self._tracker

	async def stop(self) -> None:
		self._stopped = True
		tracker, self._tracker = self._tracker, None
		if tracker is not None and tracker is not asyncio.current_task():
			tracker.cancel()
			try:
				await tracker
			except asyncio.CancelledError:
				pass
		subscription, self._subscription = self._subscription, None
		self._generation += 1
		if subscription is not None:
			await self._close(subscription)

	async def _refresh(self, position: Position) -> bool:
		async with self._lock:
			if self._stopped:
				return False
			generation = self._generation + 1
			self._pending_generation = generation
			self._pending = []
			# subscribe before the query; buffered changes are replayed over the snapshot
			subscription: Optional[FeedSubscription] = None
			try:
				subscription = await self._source.subscribe(self.locality, partial(self._deliver, generation))
				pins = await self._source.query(position, self.radius_m)
			except Exception:
				if subscription is not None:
					await self._close(subscription)
				self._pending_generation = None
				self.needs_retry = True
				logger.warning("map refresh failed; keeping last pins", exc_info=True)
				return False

			previous = self._subscription
			self._subscription = subscription
			self._generation = generation
			self._pending_generation = None
			self.query_position = position
			self.needs_retry = False
			self._filter = RadiusFilter(position, self.radius_m)
			self.pins.replace(pin for pin in pins if self._filter.admits(pin))
			pending, self._pending = self._pending, []
			for change in pending:
				self._filter.apply(change, self.pins)
			if previous is not None:
				await self._close(previous)
		self._recluster()
		return True

	async def _close(self, subscription: FeedSubscription) -> None:
		try:
			await subscription.close()
		except Exception:
			logger.warning("subscription close failed", exc_info=True)

	async def _deliver(self, generation: int, change: PinChange) -> None:
		if self._stopped:
			return
		if generation == self._pending_generation:
			self._pending.append(change)
			return
		if generation != self._generation or self._filter is None:
			return
		if self._filter.apply(change, self.pins):
			self._recluster()

	def _recluster(self) -> None:
		if self.viewport is not None:
			clusters = cluster_viewport(self.pins.values(), self.viewport, self._index)
			if clusters is not None:
				self.clusters = clusters
		if self._on_update is not None:
			self._on_update(self)

	def visible_pins(self) -> List[Pin]:
		return self.pins.values()
