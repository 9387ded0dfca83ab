"""Stream Chat REST adapter for the messaging-provider contract."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Iterable, Optional

import httpx
import jwt

from pinmeet.domain.events.chat import ChannelEvent, ChatProvider
from pinmeet.domain.events.errors import ChannelNotFoundError, ChatProviderError
from pinmeet.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

# Stream reports unknown channels as 400 with error code 16 on some endpoints
_STREAM_DOES_NOT_EXIST = 16


class WebhookSignatureError(ValueError):
    """Webhook body did not match its X-Signature header."""


class StreamChatProvider(ChatProvider):
    """Server-side Stream client authenticated with a server JWT."""

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        base_url: str = "https://chat.stream-io-api.com",
        channel_type: str = "messaging",
        timeout: float = 5.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        if not api_key or not api_secret:
            raise ValueError("stream_credentials_missing")
        self._api_key = api_key
        self._api_secret = api_secret
        self._channel_type = channel_type
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._server_token = jwt.encode({"server": True}, api_secret, algorithm="HS256")

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _channel_path(self, channel_id: str) -> str:
        return f"/channels/{self._channel_type}/{channel_id}"

    async def _request(self, op: str, method: str, path: str, *, body: Any = None, params: Optional[dict] = None) -> dict:
        query = {"api_key": self._api_key}
        if params:
            query.update(params)
        headers = {
            "Authorization": self._server_token,
            "stream-auth-type": "jwt",
        }
        try:
            response = await self._http.request(method, path, params=query, json=body, headers=headers)
        except httpx.HTTPError as exc:
            obs_metrics.chat_provider_error(op)
            raise ChatProviderError(op, str(exc)) from exc
        if response.status_code < 400:
            return response.json() if response.content else {}
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        message = str(payload.get("message") or response.text[:200])
        if response.status_code == 404 or payload.get("code") == _STREAM_DOES_NOT_EXIST:
            raise ChannelNotFoundError(op, message, status_code=response.status_code)
        obs_metrics.chat_provider_error(op)
        raise ChatProviderError(op, message, status_code=response.status_code)

    async def _upsert_users(self, user_ids: Iterable[str]) -> None:
        users = {uid: {"id": uid} for uid in user_ids}
        if users:
            await self._request("upsert_users", "POST", "/users", body={"users": users})

    async def create_channel(
        self,
        channel_id: str,
        *,
        created_by: str,
        members: Iterable[str],
        name: Optional[str] = None,
    ) -> None:
        member_ids = list(dict.fromkeys([created_by, *members]))
        await self._upsert_users(member_ids)
        data: dict[str, Any] = {"created_by_id": created_by, "members": member_ids}
        if name:
            data["name"] = name
        await self._request(
            "create_channel",
            "POST",
            f"{self._channel_path(channel_id)}/query",
            body={"data": data, "state": False},
        )

    async def delete_channel(self, channel_id: str) -> None:
        await self._request(
            "delete_channel",
            "DELETE",
            self._channel_path(channel_id),
            params={"hard_delete": "true"},
        )

    async def add_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
        ids = list(user_ids)
        await self._upsert_users(ids)
        await self._request("add_members", "POST", self._channel_path(channel_id), body={"add_members": ids})

    async def remove_members(self, channel_id: str, user_ids: Iterable[str]) -> None:
        await self._request(
            "remove_members",
            "POST",
            self._channel_path(channel_id),
            body={"remove_members": list(user_ids)},
        )

    async def set_frozen(self, channel_id: str, frozen: bool) -> None:
        await self._request("set_frozen", "PATCH", self._channel_path(channel_id), body={"set": {"frozen": frozen}})

    async def update_metadata(self, channel_id: str, data: dict) -> None:
        await self._request("update_metadata", "PATCH", self._channel_path(channel_id), body={"set": data})

    def create_user_token(self, user_id: str) -> str:
        payload = {"user_id": user_id, "iat": int(time.time())}
        return jwt.encode(payload, self._api_secret, algorithm="HS256")

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> dict:
        """Check the HMAC-SHA256 signature Stream puts in `X-Signature` and parse the body."""
        expected = hmac.new(self._api_secret.encode(), body, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookSignatureError("invalid_signature")
        try:
            return json.loads(body)
        except ValueError as exc:
            raise WebhookSignatureError("invalid_body") from exc

    async def handle_webhook(self, body: bytes, signature: Optional[str]) -> Optional[ChannelEvent]:
        payload = self.verify_webhook(body, signature)
        event = channel_event_from_webhook(payload)
        if event is not None:
            await self.dispatch(event)
        return event


def channel_event_from_webhook(payload: dict) -> Optional[ChannelEvent]:
    """Map a Stream webhook payload onto a ChannelEvent; unrelated types yield None."""
    event_type = str(payload.get("type") or "")
    if not event_type.startswith(("member.", "channel.")):
        return None
    channel_id = payload.get("channel_id")
    if not channel_id:
        cid = str(payload.get("cid") or "")
        channel_id = cid.split(":", 1)[1] if ":" in cid else None
    if not channel_id:
        return None
    user = payload.get("user") or (payload.get("member") or {}).get("user") or {}
    data = payload.get("channel") or {}
    return ChannelEvent(
        type=event_type,
        channel_id=str(channel_id),
        user_id=str(user["id"]) if user.get("id") else None,
        data={k: v for k, v in data.items() if k in ("frozen", "meetup_point", "name")},
    )
