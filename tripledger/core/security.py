"""Bearer-token identity for the ledger API.

Tokens are HS256 JWTs whose ``sub`` claim is the owner id stamped on every
trip and expense row. Issuing tokens belongs to the auth provider; the issue
helper exists for development sessions and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .errors import NotAuthenticated

_bearer = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    settings: Optional[Settings] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_minutes
    payload = {"sub": user_id, "iat": now, "exp": now + timedelta(minutes=minutes)}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise NotAuthenticated("invalid or expired token") from exc
    if not claims.get("sub"):
        raise NotAuthenticated("token has no subject")
    return claims


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise NotAuthenticated("missing bearer token")
    return str(decode_token(credentials.credentials, settings)["sub"])
