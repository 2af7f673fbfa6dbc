"""Bearer-token principal resolution.

Identity itself is issued elsewhere; this module only validates the signed
token and exposes the caller as a ``Principal``.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Header
from jose import JWTError, jwt

from staffverify.config import settings
from staffverify.core.exceptions import AuthError, PermissionDeniedError


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str = ""
    name: str = ""
    store_name: str = ""
    is_admin: bool = False


def create_access_token(
    user_id: str,
    email: str = "",
    name: str = "",
    store_name: str = "",
    role: str = "staff",
) -> str:
    """Create a JWT for a user. ``role=admin`` grants review access."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "store_name": store_name,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Returns the payload."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthError("Invalid or expired token")
    if payload.get("sub") is None:
        raise AuthError("Token missing subject")
    return payload


def principal_from_authorization(authorization: str | None) -> Principal:
    if not authorization:
        raise AuthError("Missing Authorization header")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Authorization header must be: Bearer <token>")

    payload = decode_token(parts[1])
    user_id = payload["sub"]
    return Principal(
        user_id=user_id,
        email=payload.get("email") or "",
        name=payload.get("name") or "",
        store_name=payload.get("store_name") or "",
        is_admin=payload.get("role") == "admin" or user_id in settings.admin_ids,
    )


def get_current_principal(authorization: str = Header(None)) -> Principal:
    """FastAPI dependency: the authenticated caller."""
    return principal_from_authorization(authorization)


def require_admin(authorization: str = Header(None)) -> Principal:
    """FastAPI dependency: the authenticated caller, who must be an admin."""
    principal = principal_from_authorization(authorization)
    if not principal.is_admin:
        raise PermissionDeniedError()
    return principal
