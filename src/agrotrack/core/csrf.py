"""
CSRF token issuance and verification.

A token is an HMAC-signed payload ``{"sid": session_identity, "exp": expiry}``
produced with ``itsdangerous``. Verification is a pure function of the token,
the caller's session identity and the current time.
"""

import hmac
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import structlog
from fastapi import Depends, Request
from itsdangerous import BadData, URLSafeSerializer

from .dependencies import get_csrf_guard
from .exceptions import CsrfError, ErrorCode
from .logging import log_security_event
from .rate_limit import get_client_ip
from .session import SessionInfo, get_session

logger = structlog.get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
DEFAULT_METHODS = ("POST", "PUT", "DELETE", "PATCH")
DEFAULT_EXEMPT_PATHS = ("/api/auth", "/api/health", "/api/csrf-token")


class CsrfGuard:
    """Issues and verifies session-bound CSRF tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
        exempt_paths: Sequence[str] = DEFAULT_EXEMPT_PATHS,
        trust_proxy: bool = True,
        metrics: object = None,
    ) -> None:
        self._serializer = URLSafeSerializer(secret, salt="csrf")
        self.ttl_seconds = ttl_seconds
        self.exempt_paths = tuple(exempt_paths)
        self.trust_proxy = trust_proxy
        self.metrics = metrics
        self._clock = clock

    def issue(self, session_identity: str) -> str:
        expires = int(self._clock()) + self.ttl_seconds
        return self._serializer.dumps({"sid": session_identity, "exp": expires})

    def verify(self, token: str, session_identity: str, now: Optional[float] = None) -> bool:
        if not token:
            return False
        try:
            payload = self._serializer.loads(token)
        except BadData:
            return False

        if not isinstance(payload, dict):
            return False
        sid = payload.get("sid")
        exp = payload.get("exp")
        if not isinstance(sid, str) or not isinstance(exp, (int, float)):
            return False

        if not hmac.compare_digest(sid.encode("utf-8"), session_identity.encode("utf-8")):
            return False

        current = self._clock() if now is None else now
        return exp > current

    def is_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.exempt_paths)


def session_identity(request: Request, session: Optional[SessionInfo], trust_proxy: bool = True) -> str:
    """Session user id, or ``ip:{client_ip}`` for anonymous callers."""
    if session is not None:
        return session.user_id
    return f"ip:{get_client_ip(request, trust_proxy)}"


@dataclass(frozen=True)
class CsrfConfig:
    methods: Sequence[str] = DEFAULT_METHODS
    error_message: str = "Invalid or missing CSRF token"
    skip_paths: Sequence[str] = field(default_factory=tuple)


ADMIN_CSRF = CsrfConfig(error_message="Invalid CSRF token for admin action")
USER_CSRF = CsrfConfig(error_message="Invalid CSRF token")
PUBLIC_CSRF = CsrfConfig(methods=(), skip_paths=DEFAULT_EXEMPT_PATHS)


class CsrfProtect:
    """
    Route dependency rejecting mutating requests without a valid token.

    The token is read from the ``X-CSRF-Token`` header and must have been
    issued to the caller's current session identity.
    """

    def __init__(self, config: CsrfConfig = CsrfConfig()) -> None:
        self.config = config
        self.methods = {method.upper() for method in config.methods}

    async def __call__(
        self,
        request: Request,
        guard: CsrfGuard = Depends(get_csrf_guard),
        session: Optional[SessionInfo] = Depends(get_session),
    ) -> None:
        if request.method.upper() not in self.methods:
            return

        path = request.url.path
        if guard.is_exempt(path) or any(path.startswith(p) for p in self.config.skip_paths):
            return

        ip = get_client_ip(request, guard.trust_proxy)
        token = request.headers.get(CSRF_HEADER)

        if not token:
            log_security_event("CSRF token missing", path=path, method=request.method, ip=ip)
            if guard.metrics is not None:
                guard.metrics.record_csrf_failure("missing")
            raise CsrfError("CSRF token is required", code=ErrorCode.CSRF_TOKEN_MISSING)

        identity = session_identity(request, session, guard.trust_proxy)
        if not guard.verify(token, identity):
            log_security_event(
                "CSRF token validation failed",
                path=path,
                method=request.method,
                ip=ip,
                session_id=identity,
            )
            if guard.metrics is not None:
                guard.metrics.record_csrf_failure("invalid")
            raise CsrfError(self.config.error_message, code=ErrorCode.CSRF_VALIDATION_FAILED)

        logger.debug("CSRF token verified", path=path, method=request.method)
