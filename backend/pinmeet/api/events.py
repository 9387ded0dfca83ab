"""Event endpoints: create/join/leave/delete sagas, host actions, and map queries."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from pinmeet.domain.events import container, errors, schemas
from pinmeet.domain.events.models import EventDraft, GeoPoint, MeetupPoint
from pinmeet.infra.auth import AuthenticatedUser, get_current_user
from pinmeet.settings import settings

router = APIRouter(prefix="/events", tags=["events"])


def _as_http_error(exc: Exception) -> HTTPException:
	if isinstance(exc, errors.EventError):
		return HTTPException(status_code=exc.status_code, detail=exc.detail)
	return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal_error")


@router.post("", response_model=schemas.CreateEventResponse)
async def create_event_endpoint(
	payload: schemas.EventCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.CreateEventResponse:
	draft = EventDraft(
		host_id=auth_user.id,
		title=payload.title,
		category=payload.category,
		point=GeoPoint(payload.latitude, payload.longitude),
		expires_at=payload.expires_at,
		description=payload.description,
		city=payload.city,
		verified_only=payload.verified_only,
	)
	try:
		outcome = await container.get_service().create_event(draft)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.CreateEventResponse(
		status=outcome.status,
		event=schemas.EventResponse.from_event(outcome.event, is_member=True) if outcome.event else None,
		channel_id=outcome.channel_id,
	)


@router.get("/nearby", response_model=schemas.NearbyResponse)
async def nearby_events_endpoint(
	lat: float = Query(..., ge=-90, le=90),
	lon: float = Query(..., ge=-180, le=180),
	radius_m: int | None = Query(default=None, ge=50, le=50_000),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NearbyResponse:
	service = container.get_service()
	try:
		events = await service.list_nearby(auth_user.id, GeoPoint(lat, lon), radius_m)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.NearbyResponse(
		radius_m=radius_m or settings.event_radius_m,
		items=[schemas.EventResponse.from_event(event) for event in events],
	)


@router.get("/mine", response_model=schemas.MyEventsResponse)
async def my_events_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MyEventsResponse:
	mine = await container.get_service().list_mine(auth_user.id)
	return schemas.MyEventsResponse(
		active=[schemas.EventResponse.from_event(e, is_member=True) for e in mine.active],
		past=[schemas.EventResponse.from_event(e, is_member=True) for e in mine.past],
	)


@router.get("/{event_id}", response_model=schemas.EventResponse)
async def get_event_endpoint(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.EventResponse:
	try:
		event, is_member = await container.get_service().get_event(auth_user.id, event_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.EventResponse.from_event(event, is_member=is_member)


@router.post("/{event_id}/join", response_model=schemas.JoinEventResponse)
async def join_event_endpoint(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.JoinEventResponse:
	try:
		outcome = await container.get_service().join_event(auth_user.id, event_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.JoinEventResponse(
		status=outcome.status,
		event_id=outcome.event_id,
		reason=outcome.reason,
		channel_id=outcome.channel_id,
	)


@router.post("/{event_id}/leave", response_model=schemas.LeaveEventResponse)
async def leave_event_endpoint(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.LeaveEventResponse:
	try:
		removed = await container.get_service().leave_event(auth_user.id, event_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.LeaveEventResponse(event_id=event_id, removed=removed)


@router.delete("/{event_id}/participants/{user_id}", response_model=schemas.LeaveEventResponse)
async def remove_participant_endpoint(
	event_id: str,
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.LeaveEventResponse:
	try:
		removed = await container.get_service().remove_participant(auth_user.id, event_id, user_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.LeaveEventResponse(event_id=event_id, removed=removed)


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event_endpoint(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
	try:
		await container.get_service().delete_event(auth_user.id, event_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{event_id}/reopen", response_model=schemas.ReopenResponse)
async def reopen_event_endpoint(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ReopenResponse:
	try:
		reopened = await container.get_service().reopen_event(auth_user.id, event_id)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.ReopenResponse(event_id=event_id, reopened=reopened)


@router.put("/{event_id}/meetup-point", response_model=schemas.EventResponse)
async def update_meetup_point_endpoint(
	event_id: str,
	payload: schemas.MeetupPointRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.EventResponse:
	point = MeetupPoint(label=payload.label, lat=payload.latitude, lon=payload.longitude)
	try:
		event = await container.get_service().update_meetup_point(auth_user.id, event_id, point)
	except errors.EventError as exc:
		raise _as_http_error(exc) from exc
	return schemas.EventResponse.from_event(event, is_member=True)
