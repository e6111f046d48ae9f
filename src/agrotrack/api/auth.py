"""
Authentication entry point.

Credential verification and session issuance belong to the external
authentication provider. This route is the rate-limited front door: it
rejects unknown or soft-deleted accounts and hands everything else on.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends

from ..core.dependencies import get_soft_delete
from ..core.envelope import success_response
from ..core.exceptions import AuthenticationError, ErrorCode
from ..core.rate_limit import AUTH_RATE_LIMIT, RateLimit
from ..core.soft_delete import SoftDeleteInterceptor, SoftDeleteModel
from ..models import SigninAttemptRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth")


@router.post(
    "/signin-attempt",
    status_code=202,
    dependencies=[Depends(RateLimit(AUTH_RATE_LIMIT))],
    summary="Submit sign-in credentials",
)
async def signin_attempt(
    body: SigninAttemptRequest,
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
) -> Dict[str, Any]:
    email = body.email.strip().lower()
    user = await soft_delete.model(SoftDeleteModel.USER).find_first({"email": email})
    if user is None:
        logger.info("Sign-in attempt for unknown or deleted account")
        raise AuthenticationError("Invalid email or password", code=ErrorCode.INVALID_CREDENTIALS)

    return success_response({"email": email}, "Credentials accepted for provider verification")
