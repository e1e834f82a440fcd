"""
Authentication Gate

FastAPI dependencies that admit requests carrying a valid access token.
Route prefixes declared as auth-required in the route registry get
require_auth attached when their router is mounted.

Token lookup order:
- x-auth-token header
- Authorization: Bearer <token>
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status

from jv_backend.core.security import decode_token

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset(
    {"super_admin", "counselling_admin", "admission_admin", "wfh_admin", "admin"}
)


@dataclass
class CurrentUser:
    """
    Authenticated principal, populated from the token's "user" claim.

    Attributes:
        id: Employee or student identifier
        email: Account email
        role: Role name (e.g. 'super_admin', 'counsellor')
        dept: Department code, if any
    """

    id: str
    email: str
    role: str
    dept: str | None = None

    def __str__(self) -> str:
        return f"CurrentUser(id={self.id}, email={self.email}, role={self.role})"


def _extract_token(x_auth_token: str | None, authorization: str | None) -> str | None:
    if x_auth_token:
        return x_auth_token
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :]
    return None


async def require_auth(
    request: Request,
    x_auth_token: str | None = Header(None),
    authorization: str | None = Header(None),
) -> CurrentUser:
    """
    Validate the request's access token and return the principal.

    Raises:
        HTTPException 401: If the token is missing, invalid or expired
    """
    token = _extract_token(x_auth_token, authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token, authorization denied",
        )

    payload = decode_token(token)
    claims = payload.get("user") if payload else None
    if not isinstance(claims, dict) or not claims.get("id"):
        logger.warning(f"Token verification failed for token: {token[:10]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is not valid",
        )

    user = CurrentUser(
        id=str(claims["id"]),
        email=claims.get("email", ""),
        role=claims.get("role", ""),
        dept=claims.get("dept"),
    )
    request.state.user = user
    logger.debug(f"Authenticated {user}")
    return user


def require_roles(*roles: str) -> Callable:
    """
    Build a dependency that admits only principals holding one of `roles`.

    Usage:
        @router.post("/auto-checkout")
        async def run(user: CurrentUser = Depends(require_roles(*ADMIN_ROLES))):
            ...
    """
    allowed = frozenset(roles)

    async def dependency(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if user.role not in allowed:
            logger.warning(f"Access denied: {user} lacks one of {sorted(allowed)}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied for this role",
            )
        return user

    return dependency


__all__ = [
    "ADMIN_ROLES",
    "CurrentUser",
    "require_auth",
    "require_roles",
]
