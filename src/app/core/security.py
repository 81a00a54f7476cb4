"""Bearer token verification and permission checks.

Tokens are issued by the external auth provider; this service only verifies
them (HS256 JWT signed with JWT_SECRET_KEY) and reads the claims it needs:
``sub``, ``email``, ``role`` and ``permissions``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.app.config import get_settings

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity extracted from a verified bearer token."""

    id: str
    email: str | None = None
    role: str = "user"
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, permission: str) -> bool:
        return self.role == ADMIN_ROLE or permission in self.permissions


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str) -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401): If the token is invalid, expired, or has no subject.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if not payload.get("sub"):
        raise credentials_exception
    return payload


def subject_from_token(token: str) -> str | None:
    """``sub`` of a verifying token, or None. For logging only; never raises."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def user_from_claims(payload: dict) -> AuthenticatedUser:
    """Build an AuthenticatedUser from verified token claims."""
    permissions = payload.get("permissions") or []
    return AuthenticatedUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        role=str(payload.get("role") or "user").lower(),
        permissions=frozenset(str(p) for p in permissions),
    )


def create_access_token(claims: dict) -> str:
    """Sign claims into a token. Used by seed scripts and tests."""
    settings = get_settings()
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
