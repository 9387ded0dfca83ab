import hashlib
import hmac
import json

import httpx
import jwt
import pytest

from pinmeet.domain.events import container
from pinmeet.domain.events.stream_chat import StreamChatProvider
from pinmeet.settings import settings


@pytest.mark.asyncio
async def test_chat_token_for_current_user(api_client):
    response = await api_client.post("/chat/token", headers={"X-User-Id": "guest-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == "guest-1"
    assert jwt.decode(body["token"], settings.secret_key, algorithms=["HS256"])["user_id"] == "guest-1"


@pytest.mark.asyncio
async def test_webhook_disabled_for_memory_provider(api_client):
    response = await api_client.post("/chat/webhook", content=b"{}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_verifies_signature(api_client, stack):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    provider = StreamChatProvider(api_key="key", api_secret="hook-secret", http=http)
    container.configure(store=stack.store, chat=provider, clock=stack.clock)
    received = []

    async def listener(event):
        received.append(event)

    provider.listen(listener)
    body = json.dumps({"type": "channel.updated", "channel_id": "event_01", "channel": {"frozen": False}}).encode()
    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

    bad = await api_client.post("/chat/webhook", content=body, headers={"X-Signature": "0" * 64})
    assert bad.status_code == 401

    ok = await api_client.post("/chat/webhook", content=body, headers={"X-Signature": signature})
    assert ok.json() == {"ok": True, "handled": True}
    assert received[0].data == {"frozen": False}
