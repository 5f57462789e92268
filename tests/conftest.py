"""Pytest configuration and shared fixtures.

Workflow tests run in-process against the in-memory doubles of
tests/fakes.py instead of PostgreSQL. Tests that care about exact SQL use
MagicMock/AsyncMock sessions instead.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from aidchain.api import create_app
from aidchain.core.config import WorkflowSettings
from aidchain.db.models.base import Capability
from aidchain.services.inventory import InventoryCoordinator
from aidchain.services.segregation import Actor
from aidchain.services.workflow import DeliveryWorkflowEngine
from tests.factories import make_actor
from tests.fakes import FakeSession, FakeStockLedger


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def creator() -> Actor:
    """Warehouse staff member who creates deliveries."""
    return make_actor(Capability.WAREHOUSE)


@pytest.fixture
def authorizer() -> Actor:
    return make_actor(Capability.AUTHORIZER)


@pytest.fixture
def warehouse() -> Actor:
    """Warehouse staff member distinct from the creator."""
    return make_actor(Capability.WAREHOUSE)


@pytest.fixture
def dispatcher() -> Actor:
    return make_actor(Capability.DISPATCHER)


@pytest.fixture
def admin() -> Actor:
    return make_actor(Capability.ADMIN)


# ---------------------------------------------------------------------------
# Workflow fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def ledger() -> FakeStockLedger:
    return FakeStockLedger()


@pytest.fixture
def workflow_settings() -> WorkflowSettings:
    return WorkflowSettings(code_prefix="ENT", notify_admin_on_create=True)


@pytest.fixture
def workflow(session, ledger, workflow_settings) -> DeliveryWorkflowEngine:
    """Workflow engine wired to the in-memory session and stock ledger."""
    return DeliveryWorkflowEngine(
        session,
        inventory=InventoryCoordinator(ledger),
        settings=workflow_settings,
    )


# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------


@pytest.fixture
def test_app():
    """Create a test FastAPI application instance.

    Uses the app factory to create a fresh application for testing.
    """
    return create_app()


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
