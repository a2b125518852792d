"""JWT authentication dependency for FastAPI.

Validates Bearer tokens from the Authorization header and extracts the
caller's identity and marketplace role. Tokens are issued elsewhere; this
module only verifies them.
"""

import logging
import uuid
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from src.config import settings
from src.exceptions import ForbiddenException, UnauthorizedException
from src.models.enums import ActorRole

logger = logging.getLogger(__name__)

# FastAPI security scheme: extracts Bearer token from Authorization header
_bearer_scheme = HTTPBearer(auto_error=False)

# Roles a token may carry; "system" is reserved for background jobs
TOKEN_ROLES = frozenset({ActorRole.CUSTOMER, ActorRole.PROVIDER, ActorRole.ADMIN})


@dataclass
class AuthenticatedUser:
    """Represents the authenticated user extracted from a JWT token."""

    id: uuid.UUID
    role: ActorRole
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


def _decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises UnauthorizedException on failure."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise UnauthorizedException("Invalid or expired token") from exc


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency that extracts and validates the current user from JWT."""
    if credentials is None:
        raise UnauthorizedException("Authentication required")

    payload = _decode_token(credentials.credentials)

    try:
        user = AuthenticatedUser(
            id=uuid.UUID(payload["sub"]),
            role=ActorRole(payload["role"]),
            email=payload.get("email"),
        )
    except (KeyError, ValueError) as exc:
        raise UnauthorizedException("Token is missing required claims") from exc

    if user.role not in TOKEN_ROLES:
        raise UnauthorizedException(f"Role '{user.role.value}' cannot authenticate")

    request.state.user = user
    return user


def require_role(*roles: ActorRole):
    """Factory that returns a dependency admitting only the given roles."""

    async def _check(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in roles:
            raise ForbiddenException(
                f"This action requires role {' or '.join(r.value for r in roles)}"
            )
        return user

    return _check


require_customer = require_role(ActorRole.CUSTOMER)
require_provider = require_role(ActorRole.PROVIDER)
require_admin = require_role(ActorRole.ADMIN)
