"""pytest fixtures for hairsim backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite database with all tables created
- session: Function-scoped database session for direct repository tests
- uow_factory: Function-scoped UnitOfWork factory
- FakeProvider: Scriptable stand-in for the external AI generation call
- FakeStripe: httpx MockTransport handler for the Stripe checkout API
- test_client: AsyncClient against the app with components injected into app.state
"""

import asyncio
import os
from typing import AsyncGenerator, Optional
from urllib.parse import parse_qs

# Settings are instantiated at import time by hairsim.app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from hairsim import models  # noqa: E402, F401 - register tables
from hairsim.core.config import Settings  # noqa: E402
from hairsim.core.database import setup_db_session  # noqa: E402
from hairsim.services.generation.replicate_client import GenerationParams  # noqa: E402
from hairsim.services.payments.stripe_client import StripeClient  # noqa: E402
from hairsim.uow import create_uow_factory  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a fresh on-disk SQLite database per test.

    On-disk rather than :memory: so every pooled connection sees the same tables.
    """
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'hairsim.db'}")
    engine = factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session; uncommitted work is rolled back afterwards."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class FakeProvider:
    """HairstyleProvider double: records calls, returns a URL or raises."""

    def __init__(
        self,
        result: str = "https://replicate.delivery/fake/result.jpg",
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[tuple[bytes, GenerationParams]] = []

    async def generate(self, image_bytes: bytes, params: GenerationParams) -> str:
        self.calls.append((image_bytes, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


class FakeStripe:
    """httpx handler emulating the Stripe checkout session endpoints."""

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def set_payment_status(self, session_id: str, payment_status: str) -> None:
        self.sessions[session_id]["payment_status"] = payment_status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/v1/checkout/sessions":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            session_id = f"cs_test_{len(self.sessions) + 1}"
            self.sessions[session_id] = {
                "id": session_id,
                "url": f"https://checkout.stripe.com/c/pay/{session_id}",
                "payment_status": "unpaid",
                "status": "open",
                "amount_total": int(form["line_items[0][price_data][unit_amount]"]),
                "currency": form["line_items[0][price_data][currency]"],
                "metadata": {
                    "userId": form["metadata[userId]"],
                    "packageId": form["metadata[packageId]"],
                    "credits": form["metadata[credits]"],
                },
            }
            return httpx.Response(200, json=self.sessions[session_id])

        if request.method == "GET" and path.startswith("/v1/checkout/sessions/"):
            session_id = path.rsplit("/", 1)[-1]
            if session_id not in self.sessions:
                return httpx.Response(
                    404,
                    json={"error": {"code": "resource_missing", "message": "No such session"}},
                )
            return httpx.Response(200, json=self.sessions[session_id])

        return httpx.Response(404, json={"error": {"message": "Unknown endpoint"}})


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'hairsim.db'}",
        APP_ENV="test",
        FREE_DAILY_LIMIT=3,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test_secret",
        CLIENT_URL="http://localhost:5173",
    )


@pytest_asyncio.fixture
async def test_client(app_settings, session_factory, uow_factory, fake_provider, fake_stripe):
    """Provide AsyncClient with components injected into app.state.

    ASGITransport does not run the lifespan, so the state it would build is set here.
    """
    from hairsim.api.dependencies import get_settings
    from hairsim.app import app, build_components

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    components = build_components(app_settings, uow_factory)
    components["orchestrator"].provider = fake_provider
    components["checkout_service"].stripe_client = StripeClient(
        secret_key=app_settings.stripe_secret_key,
        client_url=app_settings.client_url,
        transport=httpx.MockTransport(fake_stripe.handler),
    )
    for name, component in components.items():
        setattr(app.state, name, component)
    app.dependency_overrides[get_settings] = lambda: app_settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
