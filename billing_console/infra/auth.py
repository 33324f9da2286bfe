from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from billing_console.domain.permissions import DEFAULT_PERMISSION_NAMES
from billing_console.infra.config import JWT_ALGORITHM, JWT_EXPIRES_MIN, JWT_ISSUER, JWT_SECRET

logger = logging.getLogger(__name__)


class TokenError(ValueError):
    pass


def normalize_permissions(permissions: Iterable[str] | None) -> list[str]:
    """Deduplicate operator permissions, rejecting names the console does not grant."""
    names = sorted(set(permissions or []))
    unknown = [name for name in names if name not in DEFAULT_PERMISSION_NAMES]
    if unknown:
        raise TokenError(f"Unknown billing permissions: {', '.join(unknown)}")
    return names


def create_access_token(
    *,
    user_id: str,
    permissions: Iterable[str] | None = None,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "sub": user_id,
        "iss": JWT_ISSUER,
        "permissions": normalize_permissions(permissions),
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": ["sub", "iss", "exp"]},
        )
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    permissions = decoded.get("permissions", [])
    if not isinstance(permissions, list) or not all(isinstance(item, str) for item in permissions):
        raise TokenError("Token permissions must be a list of names")
    granted = [item for item in permissions if item in DEFAULT_PERMISSION_NAMES]
    if len(granted) != len(permissions):
        logger.warning("ignoring unknown permissions for %s", decoded["sub"])
    decoded["permissions"] = granted
    return decoded
