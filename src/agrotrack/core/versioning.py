"""
API version negotiation and per-version dispatch.

Resolution order: ``X-API-Version`` header, ``Accept-Version`` header,
``?version=`` query parameter, ``/api/v{n}/`` path segment, then the current
version. Candidates that are not supported are skipped during resolution;
``dispatch`` rejects a request whose first explicit candidate is unsupported.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from fastapi import Depends, Request, Response

from .dependencies import get_version_router
from .exceptions import UnsupportedVersionError, VersionNotImplementedError

logger = structlog.get_logger(__name__)

_PATH_VERSION = re.compile(r"/api/(v\d+)/")


class ApiVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


def _coerce(value: Any) -> str:
    return value.value if isinstance(value, ApiVersion) else str(value).strip().lower()


def version_candidates(request: Request) -> List[str]:
    """Explicit version hints on the request, highest precedence first."""
    candidates = []
    for value in (
        request.headers.get("x-api-version"),
        request.headers.get("accept-version"),
        request.query_params.get("version"),
    ):
        if value:
            candidates.append(_coerce(value))
    match = _PATH_VERSION.search(request.url.path)
    if match:
        candidates.append(match.group(1).lower())
    return candidates


class VersionRouter:
    """Resolves the requested API version and routes to version handlers."""

    def __init__(self, current: str = "v1", supported: Iterable[str] = ("v1",)) -> None:
        self.supported: List[ApiVersion] = [ApiVersion(_coerce(v)) for v in supported]
        self.current = ApiVersion(_coerce(current))
        if self.current not in self.supported:
            raise ValueError(f"Current API version {self.current.value} is not in supported versions")

    def is_supported(self, version: Any) -> bool:
        return _coerce(version) in {v.value for v in self.supported}

    @property
    def supported_values(self) -> List[str]:
        return [v.value for v in self.supported]

    def resolve(self, request: Request) -> ApiVersion:
        for candidate in version_candidates(request):
            if self.is_supported(candidate):
                return ApiVersion(candidate)
        return self.current

    async def dispatch(
        self,
        handlers: Mapping[Any, Callable[[], Awaitable[Any]]],
        request: Request,
        response: Response,
    ) -> Any:
        requested = requested_version(request)
        if requested is not None and not self.is_supported(requested):
            logger.warning(
                "Unsupported API version requested",
                requested_version=requested,
                supported_versions=self.supported_values,
                path=request.url.path,
            )
            raise UnsupportedVersionError(
                f"API version '{requested}' is not supported",
                details={
                    "supported_versions": self.supported_values,
                    "current_version": self.current.value,
                },
            )

        version = self.resolve(request)
        request.state.api_version = version

        by_version = {_coerce(key): handler for key, handler in handlers.items()}
        handler = by_version.get(version.value)
        if handler is None:
            logger.warning(
                "No handler for API version",
                version=version.value,
                path=request.url.path,
                available_versions=list(by_version),
            )
            raise VersionNotImplementedError(
                f"This endpoint does not support version '{version.value}'",
                details={"supported_versions": list(by_version)},
            )

        response.headers["X-API-Version"] = version.value
        response.headers["X-API-Current-Version"] = self.current.value
        response.headers["X-API-Supported-Versions"] = ", ".join(self.supported_values)
        return await handler()


def resolve_version(request: Request, router: Optional[VersionRouter] = None) -> ApiVersion:
    return (router or VersionRouter()).resolve(request)


def requested_version(request: Request) -> Optional[str]:
    candidates = version_candidates(request)
    return candidates[0] if candidates else None


def _iso(day: date) -> str:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


class DeprecationNotice:
    """Route dependency adding deprecation headers when ``version`` is in use."""

    def __init__(
        self,
        version: ApiVersion,
        deprecated_since: date,
        sunset: date,
        message: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.version = version
        self.deprecated_since = deprecated_since
        self.sunset = sunset
        self.message = message
        self._clock = clock

    def days_until_sunset(self) -> int:
        sunset_at = datetime(self.sunset.year, self.sunset.month, self.sunset.day, tzinfo=timezone.utc)
        return math.ceil((sunset_at - self._clock()).total_seconds() / 86400)

    async def __call__(
        self,
        request: Request,
        response: Response,
        router: VersionRouter = Depends(get_version_router),
    ) -> None:
        if router.resolve(request) != self.version:
            return

        days = self.days_until_sunset()
        logger.warning(
            "Deprecated API version used",
            version=self.version.value,
            path=request.url.path,
            days_until_sunset=days,
        )
        response.headers["X-API-Deprecated"] = "true"
        response.headers["X-API-Deprecated-Since"] = _iso(self.deprecated_since)
        response.headers["X-API-Sunset"] = _iso(self.sunset)
        response.headers["X-API-Sunset-Days"] = str(days)
        if self.message:
            response.headers["X-API-Deprecation-Message"] = self.message


@dataclass(frozen=True)
class VersionMigration:
    from_version: ApiVersion
    to_version: ApiVersion
    transform: Callable[[Any], Any]


def apply_migration(
    data: Any,
    from_version: ApiVersion,
    to_version: ApiVersion,
    migrations: Sequence[VersionMigration],
) -> Any:
    """Transform a payload between versions; failures return it unchanged."""
    migration = next(
        (m for m in migrations if m.from_version == from_version and m.to_version == to_version),
        None,
    )
    if migration is None:
        return data
    try:
        return migration.transform(data)
    except Exception as e:
        logger.warning(
            "Failed to apply API migration",
            from_version=from_version.value,
            to_version=to_version.value,
            error=str(e),
        )
        return data


@dataclass(frozen=True)
class VersionChangelog:
    version: ApiVersion
    release_date: date
    changes: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version.value,
            "release_date": self.release_date.isoformat(),
            "changes": self.changes,
        }


API_CHANGELOG: List[VersionChangelog] = [
    VersionChangelog(
        version=ApiVersion.V1,
        release_date=date(2024, 1, 1),
        changes={
            "added": [
                "Initial API release",
                "Authentication endpoints",
                "Product management",
                "Order processing",
                "Farmer management",
                "Customer management",
                "Logistics tracking",
            ],
        },
    ),
]


def get_version_changelog(version: ApiVersion) -> Optional[VersionChangelog]:
    return next((entry for entry in API_CHANGELOG if entry.version == version), None)


def get_changes_since(version: ApiVersion) -> List[VersionChangelog]:
    """Changelog entries released after ``version``; all of them if it is unknown."""
    for index, entry in enumerate(API_CHANGELOG):
        if entry.version == version:
            return API_CHANGELOG[index + 1:]
    return list(API_CHANGELOG)


def versioned_payload(data: Any, version: ApiVersion) -> Dict[str, Any]:
    return {
        "version": version.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
