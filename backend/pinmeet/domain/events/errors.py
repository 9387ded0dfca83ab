"""Errors raised by the event sagas, store, and messaging adapters."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class EventError(RuntimeError):
	"""Base class for errors surfaced to API callers."""

	code: str = "event_error"
	status_code: int = status.HTTP_400_BAD_REQUEST

	def __init__(self, code: str | None = None, *, status_code: int | None = None, detail: str | None = None) -> None:
		self.code = code or self.code
		if status_code is not None:
			self.status_code = status_code
		self.detail = detail or self.code
		super().__init__(self.detail)


class EventNotFoundError(EventError):
	code = "event_not_found"
	status_code = status.HTTP_404_NOT_FOUND


class NotHostError(EventError):
	code = "not_host"
	status_code = status.HTTP_403_FORBIDDEN


class InvalidEventError(EventError):
	code = "invalid_event"
	status_code = _HTTP_422


class EventClosedError(EventError):
	"""Mutation attempted on an expired event."""

	code = "event_closed"
	status_code = status.HTTP_409_CONFLICT


class RateLimitedError(EventError):
	code = "rate_limited"
	status_code = status.HTTP_429_TOO_MANY_REQUESTS


class ChatSyncError(EventError):
	"""The messaging provider failed during a saga step."""

	code = "chat_sync_failed"
	status_code = status.HTTP_502_BAD_GATEWAY


class StoreWriteError(EventError):
	code = "store_write_failed"
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class StoreError(RuntimeError):
	"""Raised by store implementations for unexpected persistence failures."""


class DuplicateParticipantError(StoreError):
	"""The (event_id, user_id) uniqueness constraint rejected an insert."""


class ChatProviderError(RuntimeError):
	"""Raised by messaging adapters when a provider call fails."""

	def __init__(self, op: str, message: str | None = None, *, status_code: int | None = None) -> None:
		super().__init__(message or op)
		self.op = op
		self.status_code = status_code


class ChannelNotFoundError(ChatProviderError):
	"""The provider has no channel with the requested id."""
