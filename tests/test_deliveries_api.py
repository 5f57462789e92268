"""Tests for the delivery workflow API endpoints.

Tests cover:
- Delivery creation (POST /api/deliveries)
- Workflow actions (authorize, receive-warehouse, prepare, ready, deliver, cancel)
- Reads: details, listing, history and verification, counts, work queues
- Actor identity from gateway headers
- Mapping of workflow failures to HTTP statuses and error bodies
- Input validation

The app runs in-process with the database session and workflow engine
dependencies overridden by the in-memory doubles.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from aidchain.api.middleware.auth import actor_from_headers
from aidchain.api.middleware.errors import status_for_workflow_error
from aidchain.api.middleware.request_id import resolve_request_id
from aidchain.api.routers.deliveries import get_db_session, get_workflow_engine
from aidchain.db.models.base import Capability, DeliveryStatus
from aidchain.services.errors import (
    ConflictError,
    DeliveryNotFoundError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    RequestNotFoundError,
    WorkflowError,
    WorkflowValidationError,
)
from aidchain.services.segregation import SegregationRule, WorkflowAction
from tests.factories import make_delivery, make_request, product_item, product_line

# -----------------------------------------------------------------------------
# Test fixtures
# -----------------------------------------------------------------------------


def as_actor(actor_id: UUID, *roles: str) -> dict[str, str]:
    """Gateway headers identifying an actor."""
    return {"X-Actor-Id": str(actor_id), "X-Actor-Roles": ",".join(roles)}


@pytest.fixture
async def client(test_app, session, workflow) -> AsyncGenerator[AsyncClient, None]:
    """API client whose routes run on the in-memory session and engine."""

    async def override_session():
        yield session

    test_app.dependency_overrides[get_db_session] = override_session
    test_app.dependency_overrides[get_workflow_engine] = lambda: workflow

    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as api_client:
        yield api_client

    test_app.dependency_overrides.clear()


@pytest.fixture
def product_id() -> UUID:
    return uuid4()


@pytest.fixture
def lot_id(ledger, product_id) -> UUID:
    return ledger.add_lot(product_id, 10)


@pytest.fixture
def aid_request(session, product_id):
    """Approved request for 10 units of one product."""
    request = make_request(product_item(product_id, 10))
    session.seed(request)
    return request


@pytest.fixture
def create_body(aid_request, product_id, lot_id) -> dict:
    return {
        "request_id": str(aid_request.request_id),
        "details": [{"product_id": str(product_id), "lot_id": str(lot_id), "quantity": 10}],
        "notes": "Shelter A",
    }


async def create_via_api(client: AsyncClient, body: dict, creator_id: UUID | None = None) -> dict:
    response = await client.post(
        "/api/deliveries", json=body, headers=as_actor(creator_id or uuid4(), "warehouse")
    )
    assert response.status_code == 201, response.text
    return response.json()


# -----------------------------------------------------------------------------
# Health and identity
# -----------------------------------------------------------------------------


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health_endpoint(self, api_client: AsyncClient):
        """Health check needs no actor."""
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_gateway_request_id_echoed(self, api_client: AsyncClient):
        """A well-formed incoming request ID is kept."""
        response = await api_client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.parametrize("incoming", [None, "", "bad id!", "x" * 129])
    def test_unusable_request_id_replaced(self, incoming):
        """Missing or malformed IDs are replaced with a UUID."""
        resolved = resolve_request_id(incoming)

        assert resolved != incoming
        assert str(UUID(resolved)) == resolved


class TestActorIdentity:
    """Tests for reading the actor from gateway headers."""

    def test_actor_from_headers(self):
        """Role names map to capabilities, aliases included."""
        actor_id = uuid4()
        actor = actor_from_headers(str(actor_id), "autorizador, Bodega")

        assert actor.actor_id == actor_id
        assert actor.capabilities == frozenset({Capability.AUTHORIZER, Capability.WAREHOUSE})

    @pytest.mark.parametrize("raw_id", [None, "", "not-a-uuid"])
    def test_missing_or_malformed_id(self, raw_id):
        """Without a valid UUID there is no actor."""
        assert actor_from_headers(raw_id, "admin") is None

    def test_no_roles(self):
        """An identified actor may hold no capability at all."""
        actor = actor_from_headers(str(uuid4()), None)
        assert actor.capabilities == frozenset()

    @pytest.mark.parametrize(
        ("raw_active", "expected"),
        [
            (None, True),
            ("true", True),
            ("1", True),
            ("false", False),
            (" No ", False),
            ("0", False),
        ],
    )
    def test_account_status(self, raw_active, expected):
        """Accounts are active unless the gateway says otherwise."""
        actor = actor_from_headers(str(uuid4()), "admin", raw_active)
        assert actor.is_active is expected

    @pytest.mark.asyncio
    async def test_disabled_account_is_403(self, client: AsyncClient, create_body):
        """A disabled account is refused even with the right role."""
        response = await client.post(
            "/api/deliveries",
            json=create_body,
            headers={**as_actor(uuid4(), "warehouse"), "X-Actor-Active": "false"},
        )

        assert response.status_code == 403
        assert response.json()["detail"] == {
            "action": "create",
            "rule": SegregationRule.INACTIVE_ACTOR.value,
        }

    @pytest.mark.asyncio
    async def test_action_requires_actor(self, client: AsyncClient, create_body):
        """Actions without actor headers are rejected with 401."""
        response = await client.post("/api/deliveries", json=create_body)

        assert response.status_code == 401
        assert response.json()["detail"] == "Actor identity required"

    @pytest.mark.asyncio
    async def test_malformed_actor_is_anonymous(self, client: AsyncClient, create_body):
        """A malformed actor id counts as no actor."""
        response = await client.post(
            "/api/deliveries",
            json=create_body,
            headers={"X-Actor-Id": "12345", "X-Actor-Roles": "admin"},
        )
        assert response.status_code == 401


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------


class TestCreateDelivery:
    """Tests for POST /api/deliveries."""

    @pytest.mark.asyncio
    async def test_create_returns_201(self, client: AsyncClient, session, create_body):
        """A new delivery is returned pending authorization and committed."""
        creator_id = uuid4()

        data = await create_via_api(client, create_body, creator_id)

        assert data["status"] == "pending_authorization"
        assert data["code"].startswith("ENT-")
        assert data["created_by"] == str(creator_id)
        assert data["notes"] == "Shelter A"
        assert data["is_partial"] is False
        assert [(d["line_no"], d["quantity"]) for d in data["details"]] == [(1, 10)]
        session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_dispatcher_cannot_create(self, client: AsyncClient, create_body):
        """Creation without warehouse or authorizer capability is 403."""
        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(uuid4(), "dispatcher")
        )

        assert response.status_code == 403
        assert response.json()["detail"] == {
            "action": "create",
            "rule": "missing_capability",
        }

    @pytest.mark.asyncio
    async def test_unknown_request_is_404(self, client: AsyncClient, create_body):
        """Creating against an unknown request is 404."""
        create_body["request_id"] = str(uuid4())

        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(uuid4(), "warehouse")
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_over_requested_is_400(self, client: AsyncClient, create_body):
        """Lines above the requested quantity fail validation."""
        create_body["details"][0]["quantity"] = 11

        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(uuid4(), "warehouse")
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["detail"] == {"field": "details"}

    @pytest.mark.asyncio
    async def test_unknown_field_is_422(self, client: AsyncClient, create_body):
        """Request bodies forbid unknown fields."""
        create_body["priority"] = "high"

        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(uuid4(), "warehouse")
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_empty_details_is_422(self, client: AsyncClient, create_body):
        """A delivery needs at least one line."""
        create_body["details"] = []

        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(uuid4(), "warehouse")
        )

        assert response.status_code == 422


class TestWorkflowActions:
    """Tests for the action endpoints."""

    @pytest.mark.asyncio
    async def test_full_walk(self, client: AsyncClient, ledger, lot_id, aid_request, create_body):
        """A delivery walks from creation to delivered through the API."""
        delivery = await create_via_api(client, create_body)
        base = f"/api/deliveries/{delivery['delivery_id']}"
        authorizer = as_actor(uuid4(), "authorizer")
        warehouse = as_actor(uuid4(), "warehouse")

        steps = [
            ("/authorize", authorizer, {"notes": "OK"}, "authorized"),
            ("/receive-warehouse", warehouse, {}, "received_warehouse"),
            ("/prepare", warehouse, {}, "in_preparation"),
            ("/ready", warehouse, {}, "ready"),
            (
                "/deliver",
                as_actor(uuid4(), "dispatcher"),
                {"received_by": "Ana Pérez", "receiver_document": "CC-4471"},
                "delivered",
            ),
        ]
        for path, headers, body, expected in steps:
            response = await client.post(base + path, json=body, headers=headers)
            assert response.status_code == 200, response.text
            assert response.json()["status"] == expected

        assert response.json()["received_by"] == "Ana Pérez"
        assert ledger.quantity(lot_id) == 0
        assert aid_request.items[0].quantity_delivered == 10

    @pytest.mark.asyncio
    async def test_creator_cannot_authorize(self, client: AsyncClient, create_body):
        """Self-authorization is 403 with the failed rule."""
        creator_id = uuid4()
        response = await client.post(
            "/api/deliveries", json=create_body, headers=as_actor(creator_id, "authorizer")
        )
        delivery_id = response.json()["delivery_id"]

        response = await client.post(
            f"/api/deliveries/{delivery_id}/authorize",
            json={},
            headers={**as_actor(creator_id, "authorizer"), "X-Request-ID": "req-42"},
        )

        assert response.status_code == 403
        data = response.json()
        assert data["error"] == "forbidden"
        assert data["detail"] == {
            "action": "authorize",
            "rule": SegregationRule.CREATOR_CANNOT_AUTHORIZE.value,
        }
        assert data["request_id"] == "req-42"

    @pytest.mark.asyncio
    async def test_authorize_twice_is_409(self, client: AsyncClient, create_body):
        """Repeating an action is an invalid transition."""
        delivery = await create_via_api(client, create_body)
        url = f"/api/deliveries/{delivery['delivery_id']}/authorize"
        headers = as_actor(uuid4(), "authorizer")
        await client.post(url, json={}, headers=headers)

        response = await client.post(url, json={}, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"
        assert response.json()["detail"] == {
            "action": "authorize",
            "current_status": "authorized",
        }

    @pytest.mark.asyncio
    async def test_partial_authorization(self, client: AsyncClient, create_body):
        """Authorized quantities reduce the lines."""
        delivery = await create_via_api(client, create_body)
        detail_id = delivery["details"][0]["detail_id"]

        response = await client.post(
            f"/api/deliveries/{delivery['delivery_id']}/authorize",
            json={"is_partial_auth": True, "authorized_quantities": {detail_id: 4}},
            headers=as_actor(uuid4(), "authorizer"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_partial_auth"] is True
        assert data["details"][0]["quantity"] == 4
        assert data["authorized_quantities"] == {detail_id: 4}

    @pytest.mark.asyncio
    async def test_unknown_delivery_is_404(self, client: AsyncClient):
        """Acting on an unknown delivery is 404."""
        delivery_id = uuid4()
        response = await client.post(
            f"/api/deliveries/{delivery_id}/authorize",
            json={},
            headers=as_actor(uuid4(), "authorizer"),
        )

        assert response.status_code == 404
        assert response.json()["detail"] == {"delivery_id": str(delivery_id)}

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_409(self, client: AsyncClient, session, ledger):
        """Marking ready without enough stock is 409 with the stock figures."""
        product_id = uuid4()
        lot_id = ledger.add_lot(product_id, 5)
        request = make_request(product_item(product_id, 10))
        delivery = make_delivery(
            request,
            product_line(product_id, 10, lot_id=lot_id),
            status=DeliveryStatus.IN_PREPARATION,
        )
        session.seed(request, delivery)

        response = await client.post(
            f"/api/deliveries/{delivery.delivery_id}/ready",
            json={},
            headers=as_actor(uuid4(), "bodega"),
        )

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "insufficient_stock"
        assert data["detail"]["requested"] == 10
        assert data["detail"]["available"] == 5
        assert data["detail"]["lot_id"] == str(lot_id)
        assert delivery.status == DeliveryStatus.IN_PREPARATION
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_version_is_409(self, client: AsyncClient, session):
        """A version older than the delivery's is a conflict."""
        product_id = uuid4()
        request = make_request(product_item(product_id, 1))
        delivery = make_delivery(request, product_line(product_id, 1), version=4)
        session.seed(request, delivery)

        response = await client.post(
            f"/api/deliveries/{delivery.delivery_id}/authorize",
            json={"version": 3},
            headers=as_actor(uuid4(), "authorizer"),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "commit_error",
        [
            StaleDataError("UPDATE statement on table 'deliveries' expected to update 1 row"),
            IntegrityError("INSERT INTO stock_movements", {}, Exception("check violation")),
        ],
    )
    async def test_commit_race_is_409(self, client: AsyncClient, session, commit_error):
        """A transition that loses the race at commit time is a conflict, not a 500."""
        product_id = uuid4()
        request = make_request(product_item(product_id, 1))
        delivery = make_delivery(request, product_line(product_id, 1))
        session.seed(request, delivery)
        session.commit.side_effect = commit_error

        response = await client.post(
            f"/api/deliveries/{delivery.delivery_id}/authorize",
            json={},
            headers=as_actor(uuid4(), "authorizer"),
        )

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "conflict"
        assert data["detail"] == {"delivery_id": str(delivery.delivery_id)}
        session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_deliver_without_receiver_is_400(self, client: AsyncClient, session):
        """The receiver's name is required to confirm."""
        product_id = uuid4()
        request = make_request(product_item(product_id, 1))
        delivery = make_delivery(
            request, product_line(product_id, 1), status=DeliveryStatus.READY
        )
        session.seed(request, delivery)

        response = await client.post(
            f"/api/deliveries/{delivery.delivery_id}/deliver",
            json={"receiver_document": "CC-4471"},
            headers=as_actor(uuid4(), "dispatcher"),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == {"field": "received_by"}

    @pytest.mark.asyncio
    async def test_cancel_without_reason_is_400(self, client: AsyncClient, create_body):
        """Cancelling needs a reason."""
        delivery = await create_via_api(client, create_body)

        response = await client.post(
            f"/api/deliveries/{delivery['delivery_id']}/cancel",
            json={},
            headers=as_actor(uuid4(), "admin"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["detail"] == {"field": "reason"}

    @pytest.mark.asyncio
    async def test_cancel_by_admin(self, client: AsyncClient, create_body):
        """Administrators cancel with a reason."""
        delivery = await create_via_api(client, create_body)
        admin_id = uuid4()

        response = await client.post(
            f"/api/deliveries/{delivery['delivery_id']}/cancel",
            json={"reason": "Duplicate order"},
            headers=as_actor(admin_id, "admin"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["cancelled_by"] == str(admin_id)
        assert data["cancellation_reason"] == "Duplicate order"


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------


class TestReads:
    """Tests for the read endpoints."""

    @pytest.mark.asyncio
    async def test_get_delivery(self, client: AsyncClient, create_body):
        """Details include the lines."""
        delivery = await create_via_api(client, create_body)

        response = await client.get(f"/api/deliveries/{delivery['delivery_id']}")

        assert response.status_code == 200
        assert response.json()["code"] == delivery["code"]
        assert len(response.json()["details"]) == 1

    @pytest.mark.asyncio
    async def test_get_delivery_invalid_uuid(self, client: AsyncClient):
        """A malformed delivery id is rejected before reaching the engine."""
        response = await client.get("/api/deliveries/not-a-uuid")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, client: AsyncClient, session):
        """Listing filters by status."""
        product_id = uuid4()
        request = make_request(product_item(product_id, 5))
        ready = make_delivery(request, product_line(product_id, 2), status=DeliveryStatus.READY)
        pending = make_delivery(request, product_line(product_id, 3))
        session.seed(request, ready, pending)

        response = await client.get("/api/deliveries", params={"status": "ready"})

        assert response.status_code == 200
        data = response.json()
        assert [item["delivery_id"] for item in data["items"]] == [str(ready.delivery_id)]
        assert data["limit"] == 50

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, client: AsyncClient):
        """Status filters must name a delivery status."""
        response = await client.get("/api/deliveries", params={"status": "lost"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_history_and_verification(self, client: AsyncClient, create_body):
        """History lists every transition and its chain verifies."""
        delivery = await create_via_api(client, create_body)
        base = f"/api/deliveries/{delivery['delivery_id']}"
        await client.post(
            base + "/authorize", json={}, headers=as_actor(uuid4(), "authorizer")
        )

        history = await client.get(base + "/history")
        verification = await client.get(base + "/history/verify")

        entries = history.json()["entries"]
        assert [(e["seq_no"], e["action"]) for e in entries] == [(1, "create"), (2, "authorize")]
        assert entries[0]["from_status"] is None
        assert entries[1]["to_status"] == "authorized"
        assert verification.json() == {
            "delivery_id": delivery["delivery_id"],
            "valid": True,
            "checked_records": 2,
            "errors": [],
        }

    @pytest.mark.asyncio
    async def test_history_of_unknown_delivery(self, client: AsyncClient):
        """History of an unknown delivery is 404."""
        response = await client.get(f"/api/deliveries/{uuid4()}/history")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pending_work(self, client: AsyncClient, create_body):
        """A new delivery waits in the authorizer queue."""
        delivery = await create_via_api(client, create_body)

        response = await client.get("/api/deliveries/pending-work")

        assert response.status_code == 200
        queues = {q["role"]: q for q in response.json()["queues"]}
        assert set(queues) == {"authorizer", "warehouse", "dispatcher"}
        assert queues["authorizer"]["count"] == 1
        assert queues["authorizer"]["deliveries"][0]["delivery_id"] == delivery["delivery_id"]
        assert queues["dispatcher"]["count"] == 0

    @pytest.mark.asyncio
    async def test_status_summary(self, client: AsyncClient, workflow, monkeypatch):
        """Counts are returned per status with their total."""
        counts = dict.fromkeys(DeliveryStatus, 0)
        counts[DeliveryStatus.READY] = 2
        counts[DeliveryStatus.DELIVERED] = 5
        monkeypatch.setattr(workflow, "status_summary", AsyncMock(return_value=counts))

        response = await client.get("/api/deliveries/stats/summary")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 7
        assert data["counts"]["ready"] == 2
        assert data["counts"]["cancelled"] == 0


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


class TestErrorMapping:
    """Tests for workflow failure to HTTP status mapping."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (
                InvalidTransitionError(
                    WorkflowAction.AUTHORIZE, DeliveryStatus.DELIVERED
                ),
                409,
            ),
            (
                ForbiddenError(
                    WorkflowAction.CANCEL, SegregationRule.MISSING_CAPABILITY, "Admins only"
                ),
                403,
            ),
            (WorkflowValidationError("Bad line", field="details"), 400),
            (
                InsufficientStockError(product_id=uuid4(), requested=3, available=1),
                409,
            ),
            (ConflictError(uuid4()), 409),
            (DeliveryNotFoundError(uuid4()), 404),
            (RequestNotFoundError(uuid4()), 404),
            (WorkflowError("Unclassified"), 400),
        ],
    )
    def test_status_for_workflow_error(self, error, expected):
        """Each failure kind has its HTTP status."""
        assert status_for_workflow_error(error) == expected
