"""Authentication helpers for FastAPI endpoints.

Callers arrive pre-authenticated: a bearer JWT (HS256, `sub` claim) issued by the
identity service, or in development a plain `X-User-Id` header.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pinmeet.infra import jwt as jwt_helper
from pinmeet.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	roles_claim = payload.get("roles") or payload.get("role")
	roles: Tuple[str, ...]
	if isinstance(roles_claim, (list, tuple)):
		roles = tuple(str(r).strip() for r in roles_claim if str(r).strip())
	elif isinstance(roles_claim, str):
		roles = tuple(part.strip() for part in roles_claim.split(",") if part.strip())
	else:
		roles = ()
	return AuthenticatedUser(id=str(payload["sub"]).strip(), roles=roles)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	Headers are only honoured in development; everywhere else a valid bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id and x_user_id.strip():
		return AuthenticatedUser(id=x_user_id.strip())
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


async def verify_internal_secret(
	x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
) -> None:
	"""Guard scheduler entry points with the shared internal secret."""
	if not x_internal_secret or not hmac.compare_digest(x_internal_secret, settings.internal_secret):
		raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
