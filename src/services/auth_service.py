"""
Authentication service: bearer-token issue and verification.

Identity (registration, passwords, profiles) lives outside this service.
Callers arrive with an HS256 access token issued by the identity provider
(PyJWT); the token's ``sub`` is the user's UUID and ``role`` is ``user`` or
``admin``. Whether the caller is the customer or the provider is decided per
job, not by the token.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from src.core.config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 30

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""
    user_id: uuid.UUID
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_access_token(user_id: uuid.UUID, role: str = ROLE_USER) -> tuple[str, datetime]:
    """Create a short-lived access token.

    Returns:
        Tuple of (token_string, expiration_datetime).
    """
    expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "exp": expires_at,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is otherwise invalid.
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )


def get_principal(token: str) -> Principal:
    """Decode an access token into the calling principal.

    Raises:
        ValueError: If the token is invalid, expired, or malformed.
    """
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise ValueError("Access token has expired.")
    except jwt.InvalidTokenError:
        raise ValueError("Invalid access token.")

    if payload.get("type") != "access":
        raise ValueError("Invalid token type. Expected an access token.")

    user_id_str = payload.get("sub")
    if user_id_str is None:
        raise ValueError("Invalid token: missing subject.")

    try:
        user_id = uuid.UUID(user_id_str)
    except (ValueError, AttributeError):
        raise ValueError("Invalid token: malformed subject.")

    role = payload.get("role", ROLE_USER)
    if role not in (ROLE_USER, ROLE_ADMIN):
        raise ValueError("Invalid token: unknown role.")

    return Principal(user_id=user_id, role=role)
