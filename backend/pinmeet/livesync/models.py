"""Value types for the map layer."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from pinmeet.domain.events.models import ChangeKind, Event

MAX_ZOOM = 20
DEGENERATE_ZOOM = 15


@dataclass(slots=True, frozen=True)
class Pin:
	id: str
	lat: float
	lon: float
	title: str = ""
	category: str = "other"
	status: str = "active"
	participant_count: int = 0
	city: Optional[str] = None

	def is_active(self) -> bool:
		return self.status == "active"

	@classmethod
	def from_event(cls, event: Event) -> "Pin":
		return cls(
			id=event.id,
			lat=event.lat,
			lon=event.lon,
			title=event.title,
			category=event.category.value,
			status=event.status.value,
			participant_count=event.participant_count,
			city=event.city,
		)

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "Pin":
		return cls(
			id=str(payload["id"]),
			lat=float(payload["latitude"]),
			lon=float(payload["longitude"]),
			title=str(payload.get("title") or ""),
			category=str(payload.get("category") or "other"),
			status=str(payload.get("status") or "active"),
			participant_count=int(payload.get("participant_count") or 0),
			city=payload.get("city"),
		)


@dataclass(slots=True, frozen=True)
class PinChange:
	"""Change-feed delivery as seen by the map layer; `pin` is None only for bare deletes."""

	kind: ChangeKind
	event_id: str
	pin: Optional[Pin] = None

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any]) -> "PinChange":
		event = payload.get("event")
		return cls(
			kind=ChangeKind(payload["kind"]),
			event_id=str(payload["event_id"]),
			pin=Pin.from_payload(event) if event else None,
		)


@dataclass(slots=True, frozen=True)
class Position:
	lat: float
	lon: float


def region_to_zoom(lon_delta: float) -> int:
	if not math.isfinite(lon_delta) or lon_delta <= 0:
		return DEGENERATE_ZOOM
	return max(0, min(MAX_ZOOM, math.floor(math.log2(360.0 / lon_delta) + 0.5)))


@dataclass(slots=True, frozen=True)
class Viewport:
	"""Visible map region: centre plus lat/lon spans in degrees."""

	lat: float
	lon: float
	lat_delta: float
	lon_delta: float

	def is_degenerate(self) -> bool:
		values = (self.lat, self.lon, self.lat_delta, self.lon_delta)
		if not all(math.isfinite(v) for v in values):
			return True
		return self.lat_delta <= 0 or self.lon_delta <= 0

	@property
	def zoom(self) -> int:
		return region_to_zoom(self.lon_delta)

	@property
	def bbox(self) -> Tuple[float, float, float, float]:
		"""(west, south, east, north)."""
		return (
			self.lon - self.lon_delta / 2,
			self.lat - self.lat_delta / 2,
			self.lon + self.lon_delta / 2,
			self.lat + self.lat_delta / 2,
		)
