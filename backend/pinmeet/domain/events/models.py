"""Domain models for pinned events."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class EventStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class EventCategory(str, Enum):
    BEER = "beer"
    FOOD = "food"
    SIGHTSEEING = "sightseeing"
    ADVENTURE = "adventure"
    CULTURE = "culture"
    OTHER = "other"


class VerificationStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    REJECTED = "rejected"
    VERIFIED = "verified"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class CreateStatus(str, Enum):
    CREATED = "created"
    LIMIT_REACHED = "limit_reached"


class JoinStatus(str, Enum):
    JOINED = "joined"
    ALREADY_MEMBER = "already_member"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    EVENT_EXPIRED = "event_expired"
    VERIFIED_ONLY = "verified_only"


@dataclass(slots=True, frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def is_valid(self) -> bool:
        if not (math.isfinite(self.lat) and math.isfinite(self.lon)):
            return False
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lon <= 180.0


@dataclass(slots=True, frozen=True)
class MeetupPoint:
    """Free-form meeting spot stored as channel metadata."""

    label: str
    lat: Optional[float] = None
    lon: Optional[float] = None

    def to_metadata(self) -> dict:
        data: dict = {"label": self.label}
        if self.lat is not None and self.lon is not None:
            data["latitude"] = self.lat
            data["longitude"] = self.lon
        return data

    @classmethod
    def from_metadata(cls, data: Optional[dict]) -> Optional["MeetupPoint"]:
        if not data or not data.get("label"):
            return None
        lat = data.get("latitude")
        lon = data.get("longitude")
        return cls(
            label=str(data["label"]),
            lat=float(lat) if lat is not None else None,
            lon=float(lon) if lon is not None else None,
        )


@dataclass(slots=True)
class EventDraft:
    """Validated input for the create saga."""

    host_id: str
    title: str
    category: EventCategory
    point: GeoPoint
    expires_at: datetime
    description: Optional[str] = None
    city: Optional[str] = None
    verified_only: bool = False


@dataclass(slots=True)
class Event:
    """Persisted representation of a pinned event.

    `participant_count` is maintained by the store on participant insert/delete and
    is never written by the application.
    """

    id: str
    host_id: str
    title: str
    category: EventCategory
    lat: float
    lon: float
    status: EventStatus
    expires_at: datetime
    created_at: datetime
    verified_only: bool = False
    participant_count: int = 0
    description: Optional[str] = None
    city: Optional[str] = None
    meetup_point_label: Optional[str] = None
    maps_taps: int = 0
    arrivals: int = 0
    post_event_messages: int = 0

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)

    def is_active(self) -> bool:
        return self.status == EventStatus.ACTIVE

    def is_joinable(self, now: datetime) -> bool:
        return self.is_active() and self.expires_at > now

    def is_host(self, user_id: str) -> bool:
        return self.host_id == user_id

    def copy(self) -> "Event":
        return replace(self)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "host_id": self.host_id,
            "title": self.title,
            "category": self.category.value,
            "latitude": self.lat,
            "longitude": self.lon,
            "status": self.status.value,
            "verified_only": self.verified_only,
            "participant_count": self.participant_count,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "description": self.description,
            "city": self.city,
            "meetup_point_label": self.meetup_point_label,
        }


@dataclass(slots=True)
class Participant:
    event_id: str
    user_id: str
    joined_at: datetime


@dataclass(slots=True)
class ChangeRecord:
    """One row-level change published on the event change feed.

    `event` carries the new row for inserts/updates and the last known row for deletes.
    """

    kind: ChangeKind
    event_id: str
    city: Optional[str]
    event: Optional[Event] = None

    def to_payload(self) -> dict:
        return {
            "kind": self.kind.value,
            "event_id": self.event_id,
            "city": self.city,
            "event": self.event.to_payload() if self.event is not None else None,
        }


@dataclass(slots=True)
class CreateOutcome:
    status: CreateStatus
    event: Optional[Event] = None
    channel_id: Optional[str] = None


@dataclass(slots=True)
class JoinOutcome:
    status: JoinStatus
    event_id: str
    reason: Optional[RejectReason] = None
    channel_id: Optional[str] = None


@dataclass(slots=True)
class MyEvents:
    active: list[Event] = field(default_factory=list)
    past: list[Event] = field(default_factory=list)
