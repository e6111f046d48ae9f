"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import base64
import json
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner
from redis.exceptions import ConnectionError as RedisConnectionError

from agrotrack.config import ApiSettings, DatabaseSettings, HealthSettings, Settings
from agrotrack.core.session import SessionInfo, get_session
from agrotrack.main import create_app

TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnreachableRedis:
    """Redis client whose every command fails as if the server were down."""

    def __init__(self) -> None:
        self.pings = 0

    async def _fail(self, *args: Any, **kwargs: Any) -> Any:
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def ping(self) -> bool:
        self.pings += 1
        return await self._fail()

    get = _fail
    set = _fail
    delete = _fail

    async def scan_iter(self, match: Optional[str] = None) -> Any:
        await self._fail()
        yield  # pragma: no cover

    async def aclose(self) -> None:
        return None


def make_redis() -> fakeredis.aioredis.FakeRedis:
    """Fresh in-memory Redis that shares no state with other tests."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "environment": "test",
        "log_level": "INFO",
        "session_secret": TEST_SESSION_SECRET,
        "database": DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"),
        "health": HealthSettings(memory_limit_mb=1_000_000),
    }
    values.update(overrides)
    return Settings(**values)


def session_cookie(data: Dict[str, Any], secret: str = TEST_SESSION_SECRET) -> str:
    """Signed cookie value in the format Starlette's SessionMiddleware reads."""
    payload = base64.b64encode(json.dumps(data).encode("utf-8"))
    return TimestampSigner(secret).sign(payload).decode("utf-8")


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings for a test run: file-backed SQLite in tmp_path, generous memory budget."""
    return make_settings(tmp_path)


@pytest.fixture
def redis_client() -> fakeredis.aioredis.FakeRedis:
    return make_redis()


@pytest.fixture
def app(test_settings: Settings, redis_client: fakeredis.aioredis.FakeRedis) -> FastAPI:
    return create_app(test_settings, redis_client)


@pytest.fixture
def test_client(app: FastAPI) -> Generator[TestClient, None, None]:
    """FastAPI test client with the lifespan running."""
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def versioned_client(tmp_path: Path) -> Generator[TestClient, None, None]:
    """Test client for an app serving both v1 and v2."""
    settings = make_settings(tmp_path, api=ApiSettings(current_version="v1", supported_versions=["v1", "v2"]))
    with TestClient(create_app(settings, make_redis())) as client:
        yield client


@pytest.fixture
def login(app: FastAPI) -> Callable[..., SessionInfo]:
    """Install a session for subsequent requests, as the auth provider would."""

    def _login(user_id: str = "user-1", role: str = "CUSTOMER") -> SessionInfo:
        info = SessionInfo(user_id=user_id, role=role)
        app.dependency_overrides[get_session] = lambda: info
        return info

    return _login


@pytest.fixture
def csrf_headers(test_client: TestClient) -> Callable[[], Dict[str, str]]:
    """Fetch a CSRF token for the current session and return it as a header."""

    def _headers() -> Dict[str, str]:
        response = test_client.get("/api/csrf-token")
        assert response.status_code == 200
        return {"X-CSRF-Token": response.json()["token"]}

    return _headers


@pytest.fixture
def seed(app: FastAPI, test_client: TestClient) -> Callable[[str, Dict[str, Any]], Dict[str, Any]]:
    """Insert a row through the soft-delete layer on the app's event loop."""

    def _seed(model: str, data: Dict[str, Any]) -> Dict[str, Any]:
        delegate = app.state.soft_delete.model(model)
        return test_client.portal.call(delegate.create, data)

    return _seed


@pytest.fixture
def product_payload() -> Dict[str, Any]:
    """Sample valid product for creation tests."""
    return {
        "name": "Curly Kale",
        "description": "Picked this morning",
        "category": "vegetables",
        "price": 3.5,
        "unit": "bunch",
        "stock": 40,
    }


@pytest.fixture
def many_products() -> List[Dict[str, Any]]:
    return [
        {"name": f"Heirloom Tomato {i}", "category": "vegetables", "price": 2.0 + i, "unit": "kg"}
        for i in range(3)
    ]
