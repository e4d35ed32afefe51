"""
Ingress — Test Configuration (conftest.py)
============================================

What:  Shared pytest fixtures for the test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixtures:
    ├── clock: Manually advanced clock for throttle windows
    ├── make_settings: Settings built from keyword overrides (no .env)
    ├── throttle_factory: RequestThrottle with an isolated store on `clock`
    ├── make_envelope: RequestEnvelope over a hand-built ASGI scope
    ├── tour_router: Stand-in business router mounted at /api/v1/tours
    └── client_factory: HTTPX AsyncClient over a freshly built app
"""

import os
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from fastapi import APIRouter, Body, Request
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("LOG_LEVEL", "WARNING")

from ingress.config import Settings  # noqa: E402
from ingress.envelope import RequestEnvelope  # noqa: E402
from ingress.exceptions import ApplicationError  # noqa: E402
from ingress.main import create_app  # noqa: E402
from ingress.middleware.rate_limit import MemoryThrottleStore, RequestThrottle  # noqa: E402
from ingress.routes import DEFAULT_ROUTE_TABLE, RouteBinding  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    """
    Build Settings from keyword overrides, ignoring any .env file.

    Usage:
        settings = make_settings(run_mode="production", throttle_max=3)
    """
    def _make(**overrides: Any) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def throttle_factory(clock):
    def _make(max_requests: int = 100, window_seconds: float = 3600, message: str = "Slow down!"):
        store = MemoryThrottleStore(window_seconds, clock=clock)
        return RequestThrottle(store, max_requests=max_requests, message=message, clock=clock)

    return _make


@pytest.fixture
def make_envelope():
    """RequestEnvelope for a GET request from 10.0.0.1, with an empty body."""
    def _make(query_string: bytes = b"", path: str = "/api/v1/tours", headers=None) -> RequestEnvelope:
        scope = {
            "type": "http",
            "method": "GET",
            "path": path,
            "raw_path": path.encode(),
            "query_string": query_string,
            "headers": headers or [],
            "client": ("10.0.0.1", 5000),
            "scheme": "http",
        }

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        return RequestEnvelope(scope, receive)

    return _make


def _build_tour_router() -> APIRouter:
    router = APIRouter()

    @router.get("")
    async def list_tours(request: Request) -> Dict[str, Any]:
        envelope = request.state.envelope
        return {
            "query": envelope.query,
            "difficulty": request.query_params.getlist("difficulty"),
            "sort": request.query_params.getlist("sort"),
            "polluted": envelope.polluted,
            "client": envelope.client_ip,
            "scheme": request.url.scheme,
            "cookies": envelope.cookies,
        }

    @router.post("")
    async def create_tour(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        return {"received": payload}

    @router.post("/search")
    async def search_tours(request: Request) -> Dict[str, Any]:
        raw = await request.body()
        return {"body": request.state.envelope.body, "raw": raw.decode()}

    @router.get("/name/{name}")
    async def tour_by_name(name: str) -> Dict[str, Any]:
        return {"name": name}

    @router.get("/big")
    async def big_listing() -> List[Dict[str, Any]]:
        return [{"name": f"Tour {i}", "summary": "A long walk in the forest"} for i in range(200)]

    @router.get("/boom")
    async def boom() -> None:
        raise RuntimeError("connection to db-internal:5432 refused (password=hunter2)")

    @router.get("/missing")
    async def missing() -> None:
        raise ApplicationError("No tour found with that ID", 404)

    @router.get("/{tour_id}")
    async def get_tour(tour_id: int) -> Dict[str, Any]:
        return {"id": tour_id}

    return router


@pytest.fixture
def tour_router():
    return _build_tour_router()


@pytest.fixture
def client_factory(make_settings, throttle_factory, tour_router):
    """
    Returns an async context factory producing an AsyncClient bound to a new app.

    Usage:
        async with client_factory(run_mode="production") as client:
            response = await client.get("/api/v1/bogus")
    """
    def _make(throttle=None, route_table=None, **overrides: Any) -> AsyncClient:
        overrides.setdefault("trust_proxy", True)
        settings = make_settings(**overrides)
        table = route_table
        if table is None:
            table = DEFAULT_ROUTE_TABLE + (RouteBinding("/api/v1/tours", tour_router),)
        app = create_app(
            settings=settings,
            route_table=table,
            throttle=throttle or throttle_factory(
                max_requests=settings.throttle_max,
                window_seconds=settings.throttle_window_seconds,
                message=settings.throttle_message,
            ),
        )
        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://test")

    return _make


@pytest_asyncio.fixture
async def test_client(client_factory):
    """
    Async HTTP client for the default test app (development mode).

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    async with client_factory() as client:
        yield client
