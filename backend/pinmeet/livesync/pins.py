"""Admitted pin set, keyed by event id."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional

from pinmeet.livesync.models import Pin


class PinSet:
	def __init__(self, pins: Iterable[Pin] = ()) -> None:
		self._pins: Dict[str, Pin] = {}
		self.replace(pins)

	def __len__(self) -> int:
		return len(self._pins)

	def __contains__(self, event_id: object) -> bool:
		return event_id in self._pins

	def __iter__(self) -> Iterator[Pin]:
		return iter(self.values())

	def get(self, event_id: str) -> Optional[Pin]:
		return self._pins.get(event_id)

	def values(self) -> List[Pin]:
		"""Pins ordered by id so cluster ids are stable for the same set."""
		return [self._pins[key] for key in sorted(self._pins)]

	def upsert(self, pin: Pin) -> bool:
		if self._pins.get(pin.id) == pin:
			return False
		self._pins[pin.id] = pin
		return True

	def remove(self, event_id: str) -> bool:
		return self._pins.pop(event_id, None) is not None

	def replace(self, pins: Iterable[Pin]) -> None:
		self._pins = {pin.id: pin for pin in pins}
