from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from dutywatch.clock import Clock, get_clock
from dutywatch.db import get_db
from dutywatch.errors import ApiError, ForbiddenError
from dutywatch.models import User
from dutywatch.services.suspensions import ensure_not_suspended
from dutywatch.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(*, user: User, now_utc: datetime | None = None) -> tuple[str, int]:
    settings = get_settings()
    now = now_utc or datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user.id),
        "role": user.role.value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, settings.access_token_minutes * 60


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    return payload


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_access_token(credentials.credentials)
    user = db.get(User, int(payload["sub"]))
    if user is None or not user.is_active:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="User not found or inactive.")

    request.state.actor = user.role.value
    request.state.actor_id = str(user.id)
    return user


def require_active_user(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> User:
    """Authenticated user allowed to perform duty actions.

    Suspended students are rejected with the suspension end date; lapsed
    suspensions are cleared on the way through.
    """
    ensure_not_suspended(db, user, now_utc=clock.now())
    return user


def require_elevated_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_elevated:
        raise ForbiddenError("Insufficient permissions.")
    return user


def ensure_self_or_elevated(viewer: User, user_id: int) -> None:
    if viewer.id != user_id and not viewer.is_elevated:
        raise ForbiddenError("Insufficient permissions.")
