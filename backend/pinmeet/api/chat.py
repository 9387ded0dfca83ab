"""Messaging-provider endpoints: user tokens and provider webhooks."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from pinmeet.domain.events import container, schemas
from pinmeet.domain.events.errors import ChatProviderError
from pinmeet.domain.events.stream_chat import StreamChatProvider, WebhookSignatureError
from pinmeet.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/chat", tags=["chat"])
logger = logging.getLogger(__name__)


@router.post("/token", response_model=schemas.ChatTokenResponse)
async def chat_token_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ChatTokenResponse:
	try:
		token = container.get_service().chat_token(auth_user.id)
	except ChatProviderError as exc:
		raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="chat_token_failed") from exc
	return schemas.ChatTokenResponse(user_id=auth_user.id, token=token)


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def chat_webhook_endpoint(
	request: Request,
	x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
) -> dict:
	chat = container.get_chat()
	if not isinstance(chat, StreamChatProvider):
		raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhooks_disabled")
	body = await request.body()
	try:
		event = await chat.handle_webhook(body, x_signature)
	except WebhookSignatureError as exc:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
	if event is None:
		return {"ok": True, "handled": False}
	logger.info("chat webhook", extra={"type": event.type, "channel_id": event.channel_id})
	return {"ok": True, "handled": True}
