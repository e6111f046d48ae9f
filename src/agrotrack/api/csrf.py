"""
CSRF token issuance endpoint.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request

from ..core.csrf import CsrfGuard, session_identity
from ..core.dependencies import get_csrf_guard
from ..core.session import SessionInfo, get_session
from ..models import CsrfTokenResponse

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/api/csrf-token",
    response_model=CsrfTokenResponse,
    summary="Issue a CSRF token",
    description="""
    Issue a token bound to the caller's session.

    Send it back in the `X-CSRF-Token` header on POST, PUT, PATCH and DELETE
    requests. Anonymous callers get a token bound to their IP address.
    """,
)
async def issue_csrf_token(
    request: Request,
    guard: CsrfGuard = Depends(get_csrf_guard),
    session: Optional[SessionInfo] = Depends(get_session),
) -> CsrfTokenResponse:
    identity = session_identity(request, session, guard.trust_proxy)
    token = guard.issue(identity)
    logger.debug("CSRF token issued", anonymous=session is None)
    return CsrfTokenResponse(token=token, expires_in=guard.ttl_seconds)
