"""Exact great-circle admission on top of the coarse locality subscription."""

from __future__ import annotations

from dataclasses import dataclass

from pinmeet.domain.events.models import ChangeKind
from pinmeet.geo import haversine_m
from pinmeet.livesync.models import Pin, PinChange, Position
from pinmeet.livesync.pins import PinSet


@dataclass(slots=True, frozen=True)
class RadiusFilter:
	center: Position
	radius_m: float

	def distance_m(self, pin: Pin) -> float:
		return haversine_m(self.center.lat, self.center.lon, pin.lat, pin.lon)

	def admits(self, pin: Pin) -> bool:
		return pin.is_active() and self.distance_m(pin) <= self.radius_m

	def apply(self, change: PinChange, pins: PinSet) -> bool:
		"""Fold one change into `pins`; returns True when the set changed."""
		if change.kind == ChangeKind.DELETE or change.pin is None:
			return pins.remove(change.event_id)
		if not change.pin.is_active():
			return pins.remove(change.event_id)
		if self.admits(change.pin):
			return pins.upsert(change.pin)
		return pins.remove(change.event_id)
