"""Assign every HTTP request an id before observability and handlers see it."""

from __future__ import annotations

import re

import ulid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from pinmeet.api.request_id import REQUEST_ID_ATTR

REQUEST_ID_HEADER = "X-Request-Id"
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(header_value: str | None) -> str:
    """Keep a well-formed client id; otherwise mint a ULID."""
    if header_value and _VALID_ID.match(header_value):
        return header_value
    return str(ulid.new())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        setattr(request.state, REQUEST_ID_ATTR, rid)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
