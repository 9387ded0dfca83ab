"""Messaging-provider contract and the in-process provider."""

from __future__ import annotations

import abc
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import jwt

from pinmeet.domain.events.errors import ChannelNotFoundError
from pinmeet.settings import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "event_"


def channel_id_for(event_id: str) -> str:
	return f"{CHANNEL_PREFIX}{event_id}"


def event_id_for(channel_id: str) -> Optional[str]:
	if not channel_id.startswith(CHANNEL_PREFIX):
		return None
	return channel_id[len(CHANNEL_PREFIX):] or None


@dataclass(slots=True)
class ChannelEvent:
	"""Provider-side change to a channel (membership, metadata, lifecycle)."""

	type: str
	channel_id: str
	user_id: Optional[str] = None
	data: dict = field(default_factory=dict)


ChannelListener = Callable[[ChannelEvent], Awaitable[None]]


class ChatProvider(abc.ABC):
	"""Group conversation backend keyed by `event_<event id>`.

	Membership and metadata calls raise ChannelNotFoundError when the channel does not
	exist and ChatProviderError for any other provider failure.
	"""

	def __init__(self) -> None:
		self._listeners: Dict[int, ChannelListener] = {}
		self._listener_ids = itertools.count(1)

	@abc.abstractmethod
	async def create_channel(
		self,
		channel_id: str,
		*,
		created_by: str,
		members: Iterable[str],
		name: Optional[str] = None,
	) -> None:
		...

	@abc.abstractmethod
	async def delete_channel(self, channel_id: str) -> None:
		...

	@abc.abstractmethod
	async def add_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
		...

	@abc.abstractmethod
	async def remove_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
		...

	@abc.abstractmethod
	async def set_frozen(self, channel_id: str, frozen: bool) -> None:
		...

	@abc.abstractmethod
	async def update_metadata(self, channel_id: str, data: dict) -> None:
		"""Merge `data` into the channel's custom fields."""

	@abc.abstractmethod
	def create_user_token(self, user_id: str) -> str:
		...

	async def close(self) -> None:
		return None

	def listen(self, listener: ChannelListener) -> Callable[[], None]:
		"""Register a channel-event listener and return its unsubscribe callable."""
		token = next(self._listener_ids)
		self._listeners[token] = listener

		def _unsubscribe() -> None:
			self._listeners.pop(token, None)

		return _unsubscribe

	async def dispatch(self, event: ChannelEvent) -> None:
		for listener in list(self._listeners.values()):
			try:
				await listener(event)
			except Exception:
				logger.exception(
					"channel listener failed",
					extra={"channel_id": event.channel_id, "type": event.type},
				)


@dataclass(slots=True)
class MemoryChannel:
	id: str
	created_by: str
	name: Optional[str] = None
	members: set[str] = field(default_factory=set)
	frozen: bool = False
	data: dict = field(default_factory=dict)


class MemoryChatProvider(ChatProvider):
	"""Chat provider kept in process memory; tokens are signed with the app secret."""

	def __init__(self) -> None:
		super().__init__()
		self._lock = asyncio.Lock()
		self.channels: Dict[str, MemoryChannel] = {}

	def _require(self, channel_id: str) -> MemoryChannel:
		channel = self.channels.get(channel_id)
		if channel is None:
			raise ChannelNotFoundError("get_channel", channel_id, status_code=404)
		return channel

	def members_of(self, channel_id: str) -> set[str]:
		channel = self.channels.get(channel_id)
		return set(channel.members) if channel else set()

	async def create_channel(
		self,
		channel_id: str,
		*,
		created_by: str,
		members: Iterable[str],
		name: Optional[str] = None,
	) -> None:
		async with self._lock:
			channel = self.channels.get(channel_id)
			if channel is None:
				channel = MemoryChannel(id=channel_id, created_by=created_by, name=name)
				self.channels[channel_id] = channel
			channel.members.update(members)
		await self.dispatch(ChannelEvent("channel.created", channel_id, created_by))

	async def delete_channel(self, channel_id: str) -> None:
		async with self._lock:
			self._require(channel_id)
			del self.channels[channel_id]
		await self.dispatch(ChannelEvent("channel.deleted", channel_id))

	async def add_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
		async with self._lock:
			channel = self._require(channel_id)
			added: List[str] = [uid for uid in user_ids if uid not in channel.members]
			channel.members.update(added)
		for user_id in added:
			await self.dispatch(ChannelEvent("member.added", channel_id, user_id))

	async def remove_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
		async with self._lock:
			channel = self._require(channel_id)
			removed: List[str] = [uid for uid in user_ids if uid in channel.members]
			channel.members.difference_update(removed)
		for user_id in removed:
			await self.dispatch(ChannelEvent("member.removed", channel_id, user_id))

	async def set_frozen(self, channel_id: str, frozen: bool) -> None:
		async with self._lock:
			channel = self._require(channel_id)
			channel.frozen = frozen
		await self.dispatch(ChannelEvent("channel.updated", channel_id, data={"frozen": frozen}))

	async def update_metadata(self, channel_id: str, data: dict) -> None:
		async with self._lock:
			channel = self._require(channel_id)
			channel.data.update(data)
		await self.dispatch(ChannelEvent("channel.updated", channel_id, data=dict(data)))

	def create_user_token(self, user_id: str) -> str:
		return jwt.encode({"user_id": user_id}, settings.secret_key, algorithm="HS256")
