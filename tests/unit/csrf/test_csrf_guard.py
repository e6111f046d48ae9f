"""
Tests for CSRF token issuance and verification.
"""

from typing import Any, Dict

from starlette.requests import Request

from agrotrack.core.csrf import CsrfGuard, session_identity
from agrotrack.core.session import SessionInfo

from conftest import FakeClock

SECRET = "csrf-test-secret-0123456789abcdef"


def anonymous_request(ip: str = "192.0.2.10", forwarded_for: str = "") -> Request:
    scope: Dict[str, Any] = {
        "type": "http",
        "method": "POST",
        "path": "/api/products",
        "query_string": b"",
        "headers": [(b"x-forwarded-for", forwarded_for.encode("latin-1"))] if forwarded_for else [],
        "client": (ip, 40000),
    }
    return Request(scope)


class TestCsrfGuard:
    """Test token binding, expiry and tamper detection."""

    def test_token_verifies_for_issuing_session(self) -> None:
        guard = CsrfGuard(SECRET, clock=FakeClock())
        token = guard.issue("user-1")
        assert guard.verify(token, "user-1")

    def test_token_rejected_for_other_session(self) -> None:
        """Test a token cannot be replayed from a different session."""
        guard = CsrfGuard(SECRET, clock=FakeClock())
        token = guard.issue("user-1")
        assert not guard.verify(token, "user-2")
        assert not guard.verify(token, "ip:192.0.2.10")

    def test_token_expires(self) -> None:
        clock = FakeClock()
        guard = CsrfGuard(SECRET, ttl_seconds=60, clock=clock)
        token = guard.issue("user-1")

        clock.advance(59)
        assert guard.verify(token, "user-1")
        clock.advance(1)
        assert not guard.verify(token, "user-1")

    def test_explicit_now_overrides_clock(self) -> None:
        clock = FakeClock()
        guard = CsrfGuard(SECRET, ttl_seconds=60, clock=clock)
        token = guard.issue("user-1")
        assert not guard.verify(token, "user-1", now=clock.now + 3600)

    def test_tampered_token_rejected(self) -> None:
        guard = CsrfGuard(SECRET, clock=FakeClock())
        token = guard.issue("user-1")
        tampered = ("f" if token[0] != "f" else "e") + token[1:]
        assert not guard.verify(tampered, "user-1")

    def test_token_from_other_secret_rejected(self) -> None:
        clock = FakeClock()
        other = CsrfGuard("another-secret-0123456789abcdef", clock=clock)
        guard = CsrfGuard(SECRET, clock=clock)
        assert not guard.verify(other.issue("user-1"), "user-1")

    def test_garbage_and_empty_tokens_rejected(self) -> None:
        guard = CsrfGuard(SECRET, clock=FakeClock())
        assert not guard.verify("", "user-1")
        assert not guard.verify("not-a-token", "user-1")
        assert not guard.verify("a.b.c", "user-1")

    def test_exempt_paths_match_by_prefix(self) -> None:
        guard = CsrfGuard(SECRET)
        assert guard.is_exempt("/api/auth/signin-attempt")
        assert guard.is_exempt("/api/health")
        assert not guard.is_exempt("/api/products")


class TestSessionIdentity:
    """Test the identity a token is bound to."""

    def test_session_user_id(self) -> None:
        session = SessionInfo(user_id="user-7", role="FARMER")
        assert session_identity(anonymous_request(), session) == "user-7"

    def test_anonymous_uses_client_ip(self) -> None:
        assert session_identity(anonymous_request("192.0.2.44"), None) == "ip:192.0.2.44"

    def test_forwarded_for_used_when_proxy_trusted(self) -> None:
        request = anonymous_request("10.0.0.2", forwarded_for="203.0.113.7, 10.0.0.2")
        assert session_identity(request, None) == "ip:203.0.113.7"

    def test_forwarded_for_ignored_without_proxy_trust(self) -> None:
        """Test a client-supplied X-Forwarded-For cannot pick the anonymous identity."""
        request = anonymous_request("10.0.0.2", forwarded_for="203.0.113.7")
        assert session_identity(request, None, trust_proxy=False) == "ip:10.0.0.2"
