"""Bearer-token authentication. Tokens are issued by the external auth service."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings
from .errors import UnauthorizedError

security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, settings: Settings, expires_minutes: int = 1440) -> str:
    to_encode = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_user_id(token: Optional[str], settings: Settings) -> str:
    if not token:
        raise UnauthorizedError()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise UnauthorizedError()

    user_id = payload.get("sub")
    if user_id is None:
        raise UnauthorizedError()
    return user_id


async def get_current_user(request: Request,
                           credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    return decode_user_id(credentials.credentials if credentials else None, request.app.state.settings)


async def get_optional_user(request: Request,
                            credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
                            ) -> Optional[str]:
    """User id when a valid token was sent, else None."""
    if credentials is None:
        return None
    try:
        return decode_user_id(credentials.credentials, request.app.state.settings)
    except UnauthorizedError:
        return None
