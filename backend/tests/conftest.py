"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state while sharing the same session-level schema.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from tenacity import wait_none

from api.deps import get_current_user, get_db, get_enrichment_client, get_notifier
from api.main import app
from db.session import Base
from integrations.enrichment_client import EnrichmentClient

# In-memory SQLite for tests (no PostgreSQL features needed).
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_ACCOUNT_ID = "00000000-0000-0000-0000-000000000002"
ENRICHMENT_URL = "https://enrichment.test/functions/v1/devolucoes-avancadas-sync"


# ── Collaborator doubles ───────────────────────────────────────────────


class RecordingNotifier:
    """Keeps every notification instead of delivering it."""

    def __init__(self):
        self.notifications = []

    async def notify(self, notification):
        self.notifications.append(notification)

    @property
    def levels(self) -> list[str]:
        return [n.level for n in self.notifications]

    @property
    def messages(self) -> list[str]:
        return [n.message for n in self.notifications]


class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


class EnrichmentEndpoint:
    """
    httpx.MockTransport handler standing in for the enrichment service.

    ``responses`` is consumed in order; the last entry repeats. An entry can
    be a dict (JSON body, 200), an (status, body) tuple, or an exception
    instance to raise.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [{"success": True}]
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content or b"{}"))
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, tuple):
            status_code, body = response
            return httpx.Response(status_code, json=body)
        return httpx.Response(200, json=response)

    @property
    def actions(self) -> list[str]:
        return [body.get("action") for body in self.requests]

    def client(self, max_attempts: int = 3) -> EnrichmentClient:
        return EnrichmentClient(
            ENRICHMENT_URL,
            api_key="test-key",
            timeout=5.0,
            max_attempts=max_attempts,
            transport=httpx.MockTransport(self),
            wait=wait_none(),
        )


class GatedEndpoint(EnrichmentEndpoint):
    """Async variant that holds every request until ``gate`` is set."""

    def __init__(self, *responses):
        super().__init__(*responses)
        self.arrived = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.arrived.set()
        await self.gate.wait()
        return super().__call__(request)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def endpoint():
    return EnrichmentEndpoint({"success": True, "enriched_count": 10, "processed_count": 10})


@pytest.fixture
def make_endpoint():
    return EnrichmentEndpoint


@pytest.fixture
def make_gated_endpoint():
    return GatedEndpoint


# ── Database ───────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
async def test_engine():
    """Create a test database engine and build all tables once."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        # Use SAVEPOINT so nested commits inside app code don't end our transaction
        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(db_session, transaction):
            if transaction.nested and not transaction._parent.nested:
                session.sync_session.begin_nested()

        await conn.begin_nested()  # SAVEPOINT

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def session_factory(test_db):
    """Zero-arg factory yielding the per-test session, like an async_sessionmaker."""

    @asynccontextmanager
    async def _session():
        yield test_db

    return _session


# ── API client ─────────────────────────────────────────────────────────


@pytest.fixture
def mock_user():
    """Mock authenticated user scoped to one integration account."""
    return {
        "sub": "auth0|test-user-id",
        "email": "test@devolucoes.local",
        "account_ids": [ACCOUNT_ID],
    }


@pytest.fixture
async def client(test_db, mock_user, endpoint, notifier):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_enrichment_client] = lambda: endpoint.client()
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Seed data ──────────────────────────────────────────────────────────


def make_return(account_id=ACCOUNT_ID, **overrides):
    """Build an enriched ReturnRecord created one day ago; override any column."""
    from db.models import ReturnRecord

    values = {
        "id": uuid.uuid4(),
        "integration_account_id": uuid.UUID(str(account_id)),
        "order_id": f"ORD-{uuid.uuid4().hex[:8]}",
        "claim_id": f"CLM-{uuid.uuid4().hex[:8]}",
        "account_name": "Loja Teste",
        "product_title": "Fone de Ouvido Bluetooth",
        "sku": "FONE-BT-01",
        "quantity": 1,
        "status": "opened",
        "priority": "medium",
        "claim_type": "returns",
        "unread_messages": 0,
        "attachments_count": 0,
        "retained_value": 100.0,
        "shipping_cost": -20.0,
        "compensation_value": 0.0,
        "message_timeline": [{"text": "Olá, o produto chegou com defeito"}],
        "buyer_nickname": "COMPRADOR01",
        "created_at": datetime.utcnow() - timedelta(days=1),
    }
    values.update(overrides)
    return ReturnRecord(**values)


@pytest.fixture
def return_factory():
    return make_return


@pytest.fixture
async def seeded_db(test_db):
    """Two accounts with a handful of returns each."""
    from db.models import IntegrationAccount

    account = IntegrationAccount(account_id=uuid.UUID(ACCOUNT_ID), name="Loja Teste", status="active")
    other = IntegrationAccount(account_id=uuid.UUID(OTHER_ACCOUNT_ID), name="Outra Loja", status="active")
    test_db.add_all([account, other])
    await test_db.flush()

    now = datetime.utcnow()
    returns = [
        make_return(
            order_id="ORD-1001",
            product_title="Smartwatch Pro",
            sku="WATCH-PRO",
            priority="critical",
            action_due_at=now - timedelta(hours=2),
            claim_data={"reason": {"description": "Produto com defeito"}},
            tracking_code="BR123456789",
        ),
        make_return(
            order_id="ORD-1002",
            priority="high",
            status="waiting_seller",
            unread_messages=3,
            attachments_count=2,
            escalated_to_marketplace=True,
        ),
        make_return(
            order_id="ORD-1003",
            priority="low",
            status="closed",
            in_mediation=True,
            message_timeline=None,
            attachments_count=None,
        ),
        make_return(
            order_id="ORD-1004",
            status="cancelled",
            created_at=now - timedelta(days=45),
        ),
        make_return(
            account_id=OTHER_ACCOUNT_ID,
            order_id="ORD-9001",
            account_name="Outra Loja",
        ),
    ]
    test_db.add_all(returns)
    await test_db.flush()
    await test_db.commit()

    return {"account": account, "other_account": other, "returns": returns}
