# backend/studybuddy/api/dependencies/auth.py
"""
Authentication dependencies.

Callers authenticate with a bearer JWT issued by the identity service:
``sub`` is the user id and ``roles`` the list of role names.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, FrozenSet, Optional, cast

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt import PyJWTError

from ...core.config import settings
from ...core.enums import RoleName
from ...core.exceptions import ForbiddenException, UnauthorizedException

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class UserPrincipal:
    """The authenticated caller."""

    id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_role(self, role: RoleName) -> bool:
        return role.value in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role(RoleName.ADMIN)


def decode_access_token(token: str) -> Dict[str, Any]:
    payload_raw = jwt.decode(
        token,
        settings.secret_key.get_secret_value(),
        algorithms=[settings.algorithm],
        options={"verify_aud": False},
    )
    return cast(Dict[str, Any], payload_raw)


def create_access_token(user_id: str, roles: Optional[list[str]] = None) -> str:
    """Issue a token; used by tooling and tests, production tokens come from identity."""
    payload = {"sub": user_id, "roles": roles or []}
    return jwt.encode(payload, settings.secret_key.get_secret_value(), algorithm=settings.algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserPrincipal:
    """
    Dependency returning the authenticated principal.

    Raises:
        UnauthorizedException: missing, malformed or expired token
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Not authenticated", code="UNAUTHENTICATED")
    try:
        payload = decode_access_token(credentials.credentials)
    except PyJWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise UnauthorizedException("Could not validate credentials", code="INVALID_TOKEN")

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise UnauthorizedException("Could not validate credentials", code="INVALID_TOKEN")
    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        roles = []
    return UserPrincipal(id=user_id, roles=frozenset(str(role) for role in roles))


async def require_admin(
    current_user: UserPrincipal = Depends(get_current_user),
) -> UserPrincipal:
    if not current_user.is_admin:
        raise ForbiddenException("This endpoint requires the admin role", code="UNAUTHORIZED")
    return current_user
