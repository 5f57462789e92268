"""Delivery workflow API router.

One POST endpoint per workflow action, plus reads for delivery details,
listings, audit history, status counts and per-role work queues. Every
action endpoint requires an identified actor; the engine decides whether
that actor may act. Workflow failures propagate to ErrorHandlerMiddleware,
which maps them to HTTP statuses.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from aidchain.api.middleware.auth import CurrentActor
from aidchain.api.schemas.deliveries import (
    AuthorizeRequest,
    CancelRequest,
    ConfirmDeliveryRequest,
    CreateDeliveryRequest,
    DeliveryListResponse,
    DeliveryResponse,
    DeliverySummary,
    HistoryEntryResponse,
    HistoryResponse,
    HistoryVerificationResponse,
    PendingWorkListResponse,
    PendingWorkResponse,
    StatusSummaryResponse,
    TransitionRequest,
)
from aidchain.db.models.base import DeliveryStatus
from aidchain.services.errors import ConflictError
from aidchain.services.workflow import DeliveryLine, DeliveryWorkflowEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/deliveries",
    tags=["deliveries"],
    responses={
        401: {"description": "Actor identity required"},
        403: {"description": "Duty segregation or capability rule failed"},
        404: {"description": "Delivery or request not found"},
        409: {"description": "Invalid transition, stale version or insufficient stock"},
    },
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


async def get_db_session() -> AsyncSession:
    """Get database session.

    Uses the application's async session factory.
    """
    from aidchain.db import get_async_session

    async with get_async_session() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def get_workflow_engine(request: Request, db: DbSession) -> DeliveryWorkflowEngine:
    """Build the workflow engine on the request's session."""
    settings = getattr(request.app.state, "settings", None)
    return DeliveryWorkflowEngine(db, settings=settings.workflow if settings else None)


Engine = Annotated[DeliveryWorkflowEngine, Depends(get_workflow_engine)]


async def commit_transition(db: AsyncSession, delivery_id: UUID) -> None:
    """Commit an action, reporting a lost race at commit time as a conflict."""
    try:
        await db.commit()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        logger.warning(
            "Delivery commit conflicted",
            extra={"delivery_id": str(delivery_id), "error": str(exc)},
        )
        raise ConflictError(delivery_id) from exc


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------


@router.get(
    "",
    response_model=DeliveryListResponse,
    summary="List deliveries",
)
async def list_deliveries(
    engine: Engine,
    status_filter: Annotated[
        DeliveryStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
    request_id: Annotated[UUID | None, Query(description="Filter by aid request")] = None,
    offset: Annotated[int, Query(ge=0, description="Pagination offset")] = 0,
    limit: Annotated[int, Query(ge=1, le=200, description="Page size")] = 50,
) -> DeliveryListResponse:
    """List deliveries, newest first."""
    deliveries = await engine.list_deliveries(
        status=status_filter, request_id=request_id, limit=limit, offset=offset
    )
    return DeliveryListResponse(
        items=[DeliverySummary.model_validate(d) for d in deliveries],
        offset=offset,
        limit=limit,
    )


@router.get(
    "/stats/summary",
    response_model=StatusSummaryResponse,
    summary="Delivery counts per status",
)
async def status_summary(engine: Engine) -> StatusSummaryResponse:
    """Count deliveries in each status."""
    counts = await engine.status_summary()
    return StatusSummaryResponse(counts=counts, total=sum(counts.values()))


@router.get(
    "/pending-work",
    response_model=PendingWorkListResponse,
    summary="Deliveries awaiting each role",
)
async def pending_work(engine: Engine) -> PendingWorkListResponse:
    """Count and list the deliveries waiting on each role's action."""
    queues = await engine.pending_work_by_role()
    return PendingWorkListResponse(
        queues=[
            PendingWorkResponse(
                role=queue.role,
                count=queue.count,
                deliveries=[DeliverySummary.model_validate(d) for d in queue.deliveries],
            )
            for queue in queues.values()
        ]
    )


@router.get(
    "/{delivery_id}",
    response_model=DeliveryResponse,
    summary="Get delivery details",
)
async def get_delivery(delivery_id: UUID, engine: Engine) -> DeliveryResponse:
    """Get a delivery with its line items."""
    delivery = await engine.get_delivery(delivery_id)
    return DeliveryResponse.model_validate(delivery)


@router.get(
    "/{delivery_id}/history",
    response_model=HistoryResponse,
    summary="Get delivery audit history",
)
async def get_history(delivery_id: UUID, engine: Engine) -> HistoryResponse:
    """Full ordered audit history of a delivery."""
    entries = await engine.get_history(delivery_id)
    return HistoryResponse(
        delivery_id=delivery_id,
        entries=[HistoryEntryResponse.model_validate(entry) for entry in entries],
    )


@router.get(
    "/{delivery_id}/history/verify",
    response_model=HistoryVerificationResponse,
    summary="Verify the audit hash chain of a delivery",
)
async def verify_history(delivery_id: UUID, engine: Engine) -> HistoryVerificationResponse:
    """Check that no audit record was altered, removed or reordered."""
    result = await engine.verify_history(delivery_id)
    return HistoryVerificationResponse(
        delivery_id=delivery_id,
        valid=result.valid,
        checked_records=result.checked_records,
        errors=result.errors,
    )


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------


@router.post(
    "",
    response_model=DeliveryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a delivery",
    description="Creates a delivery in PENDING_AUTHORIZATION for an approved request.",
)
async def create_delivery(
    body: CreateDeliveryRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    """Create a delivery cycle for an aid request."""
    result = await engine.create(
        actor,
        request_id=body.request_id,
        lines=[
            DeliveryLine(
                quantity=line.quantity,
                product_id=line.product_id,
                kit_id=line.kit_id,
                lot_id=line.lot_id,
            )
            for line in body.details
        ],
        notes=body.notes,
    )
    await commit_transition(db, result.delivery.delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/authorize",
    response_model=DeliveryResponse,
    summary="Authorize a delivery",
)
async def authorize_delivery(
    delivery_id: UUID,
    body: AuthorizeRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    """Authorize a delivery, fully or partially."""
    result = await engine.authorize(
        delivery_id,
        actor,
        notes=body.notes,
        is_partial_auth=body.is_partial_auth,
        authorized_quantities=body.authorized_quantities,
        expected_version=body.version,
    )
    await commit_transition(db, delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/receive-warehouse",
    response_model=DeliveryResponse,
    summary="Receive an authorized delivery in the warehouse",
)
async def receive_in_warehouse(
    delivery_id: UUID,
    body: TransitionRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    result = await engine.receive_in_warehouse(
        delivery_id, actor, notes=body.notes, expected_version=body.version
    )
    await commit_transition(db, delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/prepare",
    response_model=DeliveryResponse,
    summary="Start preparing a delivery",
)
async def start_preparation(
    delivery_id: UUID,
    body: TransitionRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    result = await engine.start_preparation(
        delivery_id, actor, notes=body.notes, expected_version=body.version
    )
    await commit_transition(db, delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/ready",
    response_model=DeliveryResponse,
    summary="Mark a delivery ready and deduct its stock",
)
async def mark_ready(
    delivery_id: UUID,
    body: TransitionRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    result = await engine.mark_ready(
        delivery_id, actor, notes=body.notes, expected_version=body.version
    )
    await commit_transition(db, delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/deliver",
    response_model=DeliveryResponse,
    summary="Confirm the hand-off to the beneficiary",
)
async def confirm_delivery(
    delivery_id: UUID,
    body: ConfirmDeliveryRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    """Record who received the items and update the request's fulfillment."""
    result = await engine.confirm_delivery(
        delivery_id,
        actor,
        received_by=body.received_by,
        receiver_document=body.receiver_document,
        receiver_signature=body.receiver_signature,
        reception_notes=body.reception_notes,
        notes=body.notes,
        expected_version=body.version,
    )
    await commit_transition(db, delivery_id)
    return DeliveryResponse.model_validate(result.delivery)


@router.post(
    "/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    summary="Cancel a delivery",
    description="Administrators only. Stock deducted at READY is restored.",
)
async def cancel_delivery(
    delivery_id: UUID,
    body: CancelRequest,
    actor: CurrentActor,
    engine: Engine,
    db: DbSession,
) -> DeliveryResponse:
    result = await engine.cancel(
        delivery_id, actor, reason=body.reason, expected_version=body.version
    )
    await commit_transition(db, delivery_id)
    logger.info(
        "Delivery cancelled via API",
        extra={"delivery_id": str(delivery_id), "actor_id": str(actor.actor_id)},
    )
    return DeliveryResponse.model_validate(result.delivery)
