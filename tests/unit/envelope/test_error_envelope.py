"""
Tests for the error taxonomy and response envelopes.
"""

import json
from typing import Any, Dict

from fastapi.responses import JSONResponse
from starlette.responses import Response

from agrotrack.core.envelope import (
    created_response,
    error_body,
    error_response,
    paginated_response,
    success_response,
)
from agrotrack.core.exceptions import (
    STATUS_BY_CODE,
    CsrfError,
    ErrorCode,
    NotFoundError,
    RateLimitError,
    status_for_code,
)


def body_of(response: JSONResponse) -> Dict[str, Any]:
    return json.loads(response.body)


class TestStatusMapping:
    """Test the code to HTTP status mapping."""

    def test_every_code_is_mapped(self) -> None:
        assert set(STATUS_BY_CODE) == set(ErrorCode)

    def test_known_codes(self) -> None:
        assert status_for_code(ErrorCode.CSRF_TOKEN_MISSING) == 403
        assert status_for_code("RATE_LIMIT_EXCEEDED") == 429
        assert status_for_code(ErrorCode.VERSION_NOT_IMPLEMENTED) == 501
        assert status_for_code(ErrorCode.EXTERNAL_SERVICE_ERROR) == 503
        assert status_for_code(ErrorCode.PAYMENT_FAILED) == 422

    def test_unknown_code_is_500(self) -> None:
        assert status_for_code("SOMETHING_NEW") == 500


class TestExceptions:
    """Test exception defaults and headers."""

    def test_defaults(self) -> None:
        error = NotFoundError()
        assert error.status_code == 404
        assert error.error_code == "NOT_FOUND"
        assert error.message == "Resource not found"
        assert error.details == {}

    def test_rate_limit_error_carries_retry_after(self) -> None:
        error = RateLimitError("Slow down", retry_after=42, headers={"X-RateLimit-Remaining": "0"})
        assert error.status_code == 429
        assert error.details == {"retry_after": 42}
        assert error.headers == {"X-RateLimit-Remaining": "0", "Retry-After": "42"}

    def test_code_override(self) -> None:
        error = CsrfError("CSRF token is required", code=ErrorCode.CSRF_TOKEN_MISSING)
        assert error.error_code == "CSRF_TOKEN_MISSING"
        assert error.status_code == 403


class TestErrorResponse:
    """Test error envelope rendering and masking."""

    def test_client_error_keeps_message_and_details(self) -> None:
        response = error_response(
            ErrorCode.VALIDATION_ERROR,
            "Email is invalid",
            details={"hint": "use a real address"},
            field="email",
            expose_details=False,
        )

        assert response.status_code == 400
        assert body_of(response) == {
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Email is invalid",
                "details": {"hint": "use a real address"},
                "field": "email",
            },
        }

    def test_server_error_masked_outside_development(self) -> None:
        """Test 5xx messages and details are hidden when not exposing details."""
        response = error_response(
            ErrorCode.INTERNAL_SERVER_ERROR,
            "connection string postgres://secret",
            details={"trace": "..."},
            expose_details=False,
        )

        assert response.status_code == 500
        assert body_of(response)["error"] == {"code": "INTERNAL_SERVER_ERROR", "message": "Internal server error"}

    def test_database_error_masked_message(self) -> None:
        response = error_response(ErrorCode.DATABASE_ERROR, "UNIQUE constraint failed", expose_details=False)
        assert body_of(response)["error"]["message"] == "Database operation failed"

    def test_not_implemented_keeps_message(self) -> None:
        response = error_response(
            ErrorCode.VERSION_NOT_IMPLEMENTED,
            "API version v2 is not implemented for this endpoint",
            details={"supported_versions": ["v1"]},
            expose_details=False,
        )

        assert response.status_code == 501
        assert body_of(response)["error"]["details"] == {"supported_versions": ["v1"]}

    def test_server_error_exposed_in_development(self) -> None:
        response = error_response(ErrorCode.INTERNAL_SERVER_ERROR, "boom", details={"trace": "x"})
        assert body_of(response)["error"]["message"] == "boom"
        assert body_of(response)["error"]["details"] == {"trace": "x"}

    def test_headers_are_passed_through(self) -> None:
        response = error_response(ErrorCode.RATE_LIMIT_EXCEEDED, "Slow down", headers={"Retry-After": "10"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "10"

    def test_error_body_omits_empty_fields(self) -> None:
        assert error_body(ErrorCode.NOT_FOUND, "Missing") == {
            "success": False,
            "error": {"code": "NOT_FOUND", "message": "Missing"},
        }


class TestSuccessEnvelopes:
    """Test success, created and paginated envelopes."""

    def test_success_response(self) -> None:
        assert success_response({"id": 1}) == {"success": True, "data": {"id": 1}}
        assert success_response(None, "Done", {"took_ms": 3}) == {
            "success": True,
            "data": None,
            "message": "Done",
            "meta": {"took_ms": 3},
        }

    def test_created_response_sets_status(self) -> None:
        response = Response()
        body = created_response(response, {"id": 1})
        assert response.status_code == 201
        assert body["message"] == "Resource created successfully"

    def test_pagination_math(self) -> None:
        body = paginated_response(["a"], page=3, limit=20, total=45)
        assert body["data"]["pagination"] == {
            "page": 3,
            "limit": 20,
            "total": 45,
            "total_pages": 3,
            "has_next": False,
            "has_prev": True,
        }

    def test_empty_page(self) -> None:
        pagination = paginated_response([], page=1, limit=20, total=0)["data"]["pagination"]
        assert pagination["total_pages"] == 0
        assert pagination["has_next"] is False
        assert pagination["has_prev"] is False
