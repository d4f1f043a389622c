# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: JWT session tokens and the session cookie."""

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk_server.config import settings
from tripdesk_server.database import get_db
from tripdesk_server.models import User, UserStatus

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
    now: datetime | None = None,
) -> str:
    """Create a JWT access token carrying iat and exp."""
    to_encode = data.copy()
    issued = now or datetime.now(timezone.utc)
    expire = issued + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode.update({"iat": int(issued.timestamp()), "exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def sign_token(user_id: int, now: datetime | None = None) -> str:
    """Session token for an account id."""
    return create_access_token({"sub": str(user_id)}, now=now)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        return payload
    except JWTError:
        return None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def issued_before_reset(payload: dict[str, Any], user: User) -> bool:
    """True when the account's credentials were reset after the token was issued."""
    if not user.credentials_reset_at:
        return False
    iat = payload.get("iat")
    if iat is None:
        return True
    return int(iat) < int(_as_utc(user.credentials_reset_at).timestamp())


def _get_token_from_request(
    request: Request, credentials: HTTPAuthorizationCredentials | None
) -> str | None:
    """Extract JWT from Bearer header or session cookie."""
    if credentials:
        return credentials.credentials
    return request.cookies.get(settings.jwt_cookie_name)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the account behind the request's token. Raises 401 if invalid."""
    token = _get_token_from_request(request, credentials)
    if not token:
        raise _unauthorized("You are not logged in. Please log in to get access.")
    payload = decode_token(token)
    if not payload:
        raise _unauthorized("Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token")
    result = await db.execute(select(User).where(User.id == int(user_id)))
    user = result.scalar_one_or_none()
    if not user:
        raise _unauthorized("The user belonging to this token no longer exists.")
    if user.status != UserStatus.ACTIVE:
        raise _unauthorized("This account has been deactivated.")
    if issued_before_reset(payload, user):
        raise _unauthorized("Credentials recently changed. Please log in again.")
    return user


def set_session_cookie(request: Request, response: Response, token: str) -> None:
    """Attach the session token as an http-only, same-site strict cookie."""
    secure = (
        request.url.scheme == "https"
        or request.headers.get("x-forwarded-proto") == "https"
    )
    response.set_cookie(
        settings.jwt_cookie_name,
        token,
        max_age=settings.jwt_cookie_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.jwt_cookie_name, httponly=True, samesite="strict")
