from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from pinmeet.domain.events.models import (
    CreateStatus,
    Event,
    EventCategory,
    EventStatus,
    JoinStatus,
    RejectReason,
)


class EventCreateRequest(BaseModel):
    title: str = Field(..., max_length=200)
    category: EventCategory
    description: Optional[str] = Field(None, max_length=1000)
    expires_at: datetime
    latitude: float
    longitude: float
    city: Optional[str] = Field(None, max_length=120)
    verified_only: bool = False


class MeetupPointRequest(BaseModel):
    label: str = Field(..., min_length=1, max_length=120)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class EventResponse(BaseModel):
    id: str
    host_id: str
    title: str
    category: EventCategory
    latitude: float
    longitude: float
    status: EventStatus
    verified_only: bool
    participant_count: int
    expires_at: datetime
    created_at: datetime
    description: Optional[str] = None
    city: Optional[str] = None
    meetup_point_label: Optional[str] = None
    is_member: Optional[bool] = None

    @classmethod
    def from_event(cls, event: Event, *, is_member: Optional[bool] = None) -> "EventResponse":
        return cls(
            id=event.id,
            host_id=event.host_id,
            title=event.title,
            category=event.category,
            latitude=event.lat,
            longitude=event.lon,
            status=event.status,
            verified_only=event.verified_only,
            participant_count=event.participant_count,
            expires_at=event.expires_at,
            created_at=event.created_at,
            description=event.description,
            city=event.city,
            meetup_point_label=event.meetup_point_label,
            is_member=is_member,
        )


class CreateEventResponse(BaseModel):
    status: CreateStatus
    event: Optional[EventResponse] = None
    channel_id: Optional[str] = None


class JoinEventResponse(BaseModel):
    status: JoinStatus
    event_id: str
    reason: Optional[RejectReason] = None
    channel_id: Optional[str] = None


class LeaveEventResponse(BaseModel):
    event_id: str
    removed: bool


class ReopenResponse(BaseModel):
    event_id: str
    reopened: bool


class NearbyResponse(BaseModel):
    radius_m: int
    items: List[EventResponse]


class MyEventsResponse(BaseModel):
    active: List[EventResponse]
    past: List[EventResponse]


class ChatTokenResponse(BaseModel):
    user_id: str
    token: str


class SweepResponse(BaseModel):
    sweep: str
    selected: int
    processed: int
    skipped: int
    failed: int
