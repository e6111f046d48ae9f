"""
Session access.

Sessions are issued by the external authentication provider and carried in
the Starlette session cookie; this module only reads ``user_id`` and ``role``
from it.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request

from .exceptions import AuthenticationError, ForbiddenError


@dataclass(frozen=True)
class SessionInfo:
    user_id: str
    role: str


async def get_session(request: Request) -> Optional[SessionInfo]:
    """Current session, or ``None`` for anonymous requests."""
    if "session" not in request.scope:
        return None
    data = request.session
    user_id = data.get("user_id")
    if not user_id:
        return None
    return SessionInfo(user_id=str(user_id), role=str(data.get("role") or "CUSTOMER").upper())


async def require_session(session: Optional[SessionInfo] = Depends(get_session)) -> SessionInfo:
    if session is None:
        raise AuthenticationError()
    return session


def require_role(*roles: str) -> Callable[..., object]:
    """Dependency factory rejecting sessions whose role is not in ``roles``."""
    allowed = {role.upper() for role in roles}

    async def dependency(session: SessionInfo = Depends(require_session)) -> SessionInfo:
        if session.role not in allowed:
            raise ForbiddenError(details={"required_roles": sorted(allowed)})
        return session

    return dependency
