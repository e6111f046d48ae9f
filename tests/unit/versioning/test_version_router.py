"""
Tests for API version negotiation, dispatch and payload migration.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from starlette.requests import Request
from starlette.responses import Response

from agrotrack.core.exceptions import ErrorCode, UnsupportedVersionError, VersionNotImplementedError
from agrotrack.core.versioning import (
    ApiVersion,
    DeprecationNotice,
    VersionMigration,
    VersionRouter,
    apply_migration,
    get_changes_since,
    get_version_changelog,
    requested_version,
    versioned_payload,
)


def make_request(
    path: str = "/api/products",
    headers: Optional[Dict[str, str]] = None,
    query: str = "",
) -> Request:
    raw_headers: List[Tuple[bytes, bytes]] = [
        (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in (headers or {}).items()
    ]
    scope: Dict[str, Any] = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": query.encode("latin-1"),
        "headers": raw_headers,
        "client": ("127.0.0.1", 1),
    }
    return Request(scope)


async def v1_handler() -> str:
    return "v1-body"


async def v2_handler() -> str:
    return "v2-body"


class TestVersionResolution:
    """Test the precedence of version hints."""

    def test_default_is_current(self) -> None:
        router = VersionRouter("v1", ["v1", "v2"])
        assert router.resolve(make_request()) == ApiVersion.V1

    def test_header_beats_query(self) -> None:
        """Test X-API-Version wins over ?version=."""
        router = VersionRouter("v1", ["v1", "v2"])
        request = make_request(headers={"X-API-Version": "v2"}, query="version=v1")
        assert router.resolve(request) == ApiVersion.V2

    def test_accept_version_header(self) -> None:
        router = VersionRouter("v1", ["v1", "v2"])
        assert router.resolve(make_request(headers={"Accept-Version": "V2"})) == ApiVersion.V2

    def test_query_beats_path(self) -> None:
        router = VersionRouter("v1", ["v1", "v2"])
        assert router.resolve(make_request("/api/v1/products", query="version=v2")) == ApiVersion.V2

    def test_path_segment(self) -> None:
        router = VersionRouter("v1", ["v1", "v2"])
        assert router.resolve(make_request("/api/v2/products")) == ApiVersion.V2

    def test_unsupported_candidates_are_skipped(self) -> None:
        router = VersionRouter("v1", ["v1"])
        assert router.resolve(make_request(headers={"X-API-Version": "v9"})) == ApiVersion.V1
        assert requested_version(make_request(headers={"X-API-Version": "v9"})) == "v9"

    def test_current_must_be_supported(self) -> None:
        with pytest.raises(ValueError):
            VersionRouter("v2", ["v1"])


class TestVersionDispatch:
    """Test handler selection and version errors."""

    @pytest.mark.asyncio
    async def test_dispatch_runs_matching_handler(self) -> None:
        router = VersionRouter("v1", ["v1", "v2"])
        request = make_request(headers={"X-API-Version": "v2"})
        response = Response()

        body = await router.dispatch({ApiVersion.V1: v1_handler, ApiVersion.V2: v2_handler}, request, response)

        assert body == "v2-body"
        assert request.state.api_version == ApiVersion.V2
        assert response.headers["X-API-Version"] == "v2"
        assert response.headers["X-API-Current-Version"] == "v1"
        assert response.headers["X-API-Supported-Versions"] == "v1, v2"

    @pytest.mark.asyncio
    async def test_unsupported_version_rejected(self) -> None:
        """Test an explicitly requested unknown version is a 400."""
        router = VersionRouter("v1", ["v1"])
        request = make_request(query="version=v3")

        with pytest.raises(UnsupportedVersionError) as exc_info:
            await router.dispatch({"v1": v1_handler}, request, Response())

        error = exc_info.value
        assert error.status_code == 400
        assert error.code == ErrorCode.UNSUPPORTED_API_VERSION
        assert error.details == {"supported_versions": ["v1"], "current_version": "v1"}

    @pytest.mark.asyncio
    async def test_missing_handler_is_not_implemented(self) -> None:
        """Test a supported version without a handler is a 501."""
        router = VersionRouter("v1", ["v1", "v2"])
        request = make_request(headers={"X-API-Version": "v2"})

        with pytest.raises(VersionNotImplementedError) as exc_info:
            await router.dispatch({ApiVersion.V1: v1_handler}, request, Response())

        assert exc_info.value.status_code == 501
        assert exc_info.value.details == {"supported_versions": ["v1"]}


class TestDeprecationNotice:
    """Test deprecation headers."""

    @pytest.mark.asyncio
    async def test_headers_added_for_deprecated_version(self) -> None:
        notice = DeprecationNotice(
            ApiVersion.V1,
            deprecated_since=date(2025, 1, 1),
            sunset=date(2025, 7, 1),
            message="Use v2",
            clock=lambda: datetime(2025, 6, 1, tzinfo=timezone.utc),
        )
        response = Response()

        await notice(make_request(), response, VersionRouter("v1", ["v1", "v2"]))

        assert response.headers["X-API-Deprecated"] == "true"
        assert response.headers["X-API-Deprecated-Since"] == "2025-01-01T00:00:00Z"
        assert response.headers["X-API-Sunset"] == "2025-07-01T00:00:00Z"
        assert response.headers["X-API-Sunset-Days"] == "30"
        assert response.headers["X-API-Deprecation-Message"] == "Use v2"

    @pytest.mark.asyncio
    async def test_no_headers_for_other_versions(self) -> None:
        notice = DeprecationNotice(ApiVersion.V1, date(2025, 1, 1), date(2025, 7, 1))
        response = Response()

        await notice(make_request(headers={"X-API-Version": "v2"}), response, VersionRouter("v1", ["v1", "v2"]))

        assert "X-API-Deprecated" not in response.headers


class TestMigrationsAndChangelog:
    """Test payload migration and changelog lookups."""

    def test_migration_applied(self) -> None:
        migrations = [VersionMigration(ApiVersion.V1, ApiVersion.V2, lambda d: {**d, "v": 2})]
        assert apply_migration({"a": 1}, ApiVersion.V1, ApiVersion.V2, migrations) == {"a": 1, "v": 2}

    def test_missing_migration_returns_input(self) -> None:
        assert apply_migration({"a": 1}, ApiVersion.V2, ApiVersion.V1, []) == {"a": 1}

    def test_failing_migration_returns_input(self) -> None:
        """Test a broken transform degrades to the untransformed payload."""
        migrations = [VersionMigration(ApiVersion.V1, ApiVersion.V2, lambda d: d["missing"])]
        assert apply_migration({"a": 1}, ApiVersion.V1, ApiVersion.V2, migrations) == {"a": 1}

    def test_changelog(self) -> None:
        entry = get_version_changelog(ApiVersion.V1)
        assert entry is not None
        assert entry.to_dict()["release_date"] == "2024-01-01"
        assert get_changes_since(ApiVersion.V1) == []
        assert get_version_changelog(ApiVersion.V2) is None

    def test_versioned_payload(self) -> None:
        payload = versioned_payload({"x": 1}, ApiVersion.V2)
        assert payload["version"] == "v2"
        assert payload["data"] == {"x": 1}
