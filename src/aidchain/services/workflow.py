"""Delivery workflow engine.

This module implements the delivery authorization and fulfillment state
machine:
- One named action per transition, each legal from a single source status
  (cancel: from any non-terminal status)
- Duty segregation checks before any side effect
- Inventory deduction entering READY and reversal when cancelling from READY
- Fulfillment bookkeeping on the owning request
- One audit record and one work-item event per successful transition

The flow is:
    pending_authorization -> authorized -> received_warehouse
        -> in_preparation -> ready -> delivered
    any non-terminal status -> cancelled

Every action runs as a single unit of work inside the caller's transaction:
the engine flushes on success and rolls the session back on any failure, so
no partial transition is ever observable. The caller commits.
"""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, ClassVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from aidchain.db.models.base import DeliveryStatus
from aidchain.db.models.deliveries import Delivery, DeliveryDetail
from aidchain.services.audit_log import DeliveryAuditLog
from aidchain.services.errors import (
    ConflictError,
    DeliveryNotFoundError,
    InvalidTransitionError,
    WorkflowValidationError,
)
from aidchain.services.fulfillment import FulfillmentTracker, ItemKey, line_quantities
from aidchain.services.inventory import InventoryCoordinator
from aidchain.services.notifications import NotificationRouter
from aidchain.services.segregation import DutySegregationGuard, WorkflowAction
from aidchain.services.stock_ledger import StockLedger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from aidchain.core.config import WorkflowSettings
    from aidchain.db.models.base import Capability
    from aidchain.services.audit_log import HistoryEntry, HistoryVerificationResult
    from aidchain.services.notifications import PendingWork
    from aidchain.services.segregation import Actor

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits

NON_TERMINAL_STATUSES = frozenset(
    {
        DeliveryStatus.PENDING_AUTHORIZATION,
        DeliveryStatus.AUTHORIZED,
        DeliveryStatus.RECEIVED_WAREHOUSE,
        DeliveryStatus.IN_PREPARATION,
        DeliveryStatus.READY,
    }
)


def generate_delivery_code(prefix: str, length: int = 6, *, year: int | None = None) -> str:
    """Generate a human-readable delivery code such as ENT-2026-K3Z9QA."""
    year = year or datetime.now(UTC).year
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{year}-{suffix}"


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


@dataclass(frozen=True, slots=True)
class DeliveryLine:
    """A requested line of a new delivery.

    Attributes:
        quantity: Units (or kits) to deliver, at least 1.
        product_id: Product delivered. Exactly one of product_id/kit_id is set.
        kit_id: Kit delivered.
        lot_id: Optional lot to draw a product line from.
    """

    quantity: int
    product_id: uuid.UUID | None = None
    kit_id: uuid.UUID | None = None
    lot_id: uuid.UUID | None = None

    @property
    def item_key(self) -> tuple[str, uuid.UUID]:
        if self.product_id is not None:
            return ("product", self.product_id)
        return ("kit", self.kit_id)

    def validate(self, line_no: int) -> None:
        """Check the line's shape.

        Raises:
            WorkflowValidationError: If the line is malformed.
        """
        if (self.product_id is None) == (self.kit_id is None):
            raise WorkflowValidationError(
                f"Line {line_no} must reference exactly one of a product or a kit",
                field="details",
            )
        if self.lot_id is not None and self.product_id is None:
            raise WorkflowValidationError(
                f"Line {line_no}: only product lines can be pinned to a lot",
                field="details",
            )
        if self.quantity < 1:
            raise WorkflowValidationError(
                f"Line {line_no}: quantity must be at least 1",
                field="details",
            )


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of a successful workflow action.

    Attributes:
        delivery: The updated delivery.
        previous_status: Status before the action (None for creation).
        new_status: Status after the action.
        history_entry: Audit record appended for the action.
    """

    delivery: Delivery
    previous_status: DeliveryStatus | None
    new_status: DeliveryStatus
    history_entry: HistoryEntry


class DeliveryWorkflowEngine:
    """Service driving deliveries through the authorization chain.

    Example:
        engine = DeliveryWorkflowEngine(session)
        result = await engine.authorize(delivery_id, actor, notes="Approved")
        await session.commit()
    """

    # action -> (legal source statuses, target status)
    TRANSITIONS: ClassVar[
        dict[WorkflowAction, tuple[frozenset[DeliveryStatus], DeliveryStatus]]
    ] = {
        WorkflowAction.AUTHORIZE: (
            frozenset({DeliveryStatus.PENDING_AUTHORIZATION}),
            DeliveryStatus.AUTHORIZED,
        ),
        WorkflowAction.RECEIVE_IN_WAREHOUSE: (
            frozenset({DeliveryStatus.AUTHORIZED}),
            DeliveryStatus.RECEIVED_WAREHOUSE,
        ),
        WorkflowAction.START_PREPARATION: (
            frozenset({DeliveryStatus.RECEIVED_WAREHOUSE}),
            DeliveryStatus.IN_PREPARATION,
        ),
        WorkflowAction.MARK_READY: (
            frozenset({DeliveryStatus.IN_PREPARATION}),
            DeliveryStatus.READY,
        ),
        WorkflowAction.CONFIRM_DELIVERY: (
            frozenset({DeliveryStatus.READY}),
            DeliveryStatus.DELIVERED,
        ),
        WorkflowAction.CANCEL: (NON_TERMINAL_STATUSES, DeliveryStatus.CANCELLED),
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        guard: DutySegregationGuard | None = None,
        audit: DeliveryAuditLog | None = None,
        inventory: InventoryCoordinator | None = None,
        fulfillment: FulfillmentTracker | None = None,
        notifications: NotificationRouter | None = None,
        settings: WorkflowSettings | None = None,
    ) -> None:
        """Initialize the engine.

        Collaborators default to their SQL-backed implementations on the
        same session.

        Args:
            session: SQLAlchemy async session for database operations.
            guard: Duty segregation guard.
            audit: Delivery audit log.
            inventory: Inventory coordinator.
            fulfillment: Fulfillment tracker.
            notifications: Notification router.
            settings: Workflow settings. Defaults to the process settings.
        """
        if settings is None:
            from aidchain.core.settings import get_settings

            settings = get_settings().workflow

        self._session = session
        self._settings = settings
        self._guard = guard or DutySegregationGuard()
        self._audit = audit or DeliveryAuditLog(session)
        self._inventory = inventory or InventoryCoordinator(StockLedger(session))
        self._fulfillment = fulfillment or FulfillmentTracker(session)
        self._notifications = notifications or NotificationRouter(session, settings)

    # -------------------------------------------------------------------------
    # Transition graph
    # -------------------------------------------------------------------------

    @classmethod
    def is_valid_transition(
        cls,
        from_status: DeliveryStatus | None,
        to_status: DeliveryStatus,
    ) -> bool:
        """Check whether an edge exists in the transition graph.

        Args:
            from_status: Current status, None for a delivery being created.
            to_status: Desired target status.
        """
        if from_status is None:
            return to_status == DeliveryStatus.PENDING_AUTHORIZATION
        return any(
            from_status in sources and to_status == target
            for sources, target in cls.TRANSITIONS.values()
        )

    @staticmethod
    def is_terminal_status(status: DeliveryStatus) -> bool:
        return status not in NON_TERMINAL_STATUSES

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_delivery(self, delivery_id: uuid.UUID) -> Delivery:
        """Get a delivery by ID.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist.
        """
        query = select(Delivery).where(Delivery.delivery_id == delivery_id)
        result = await self._session.execute(query)
        delivery = result.scalar_one_or_none()

        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        return delivery

    async def list_deliveries(
        self,
        *,
        status: DeliveryStatus | None = None,
        request_id: uuid.UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[Delivery]:
        """List deliveries, newest first, optionally filtered."""
        query = select(Delivery)
        if status is not None:
            query = query.where(Delivery.status == status)
        if request_id is not None:
            query = query.where(Delivery.request_id == request_id)
        query = (
            query.order_by(Delivery.created_at.desc(), Delivery.delivery_id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def status_summary(self) -> dict[DeliveryStatus, int]:
        """Count deliveries per status. Every status is present."""
        query = select(Delivery.status, func.count(Delivery.delivery_id)).group_by(
            Delivery.status
        )
        result = await self._session.execute(query)
        counts = dict.fromkeys(DeliveryStatus, 0)
        for status, count in result.all():
            counts[status] = count
        return counts

    async def get_history(self, delivery_id: uuid.UUID) -> list[HistoryEntry]:
        """Full ordered audit history of a delivery.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist.
        """
        await self.get_delivery(delivery_id)
        return await self._audit.get_history(delivery_id)

    async def verify_history(self, delivery_id: uuid.UUID) -> HistoryVerificationResult:
        """Verify the hash chain of a delivery's audit history."""
        await self.get_delivery(delivery_id)
        return await self._audit.verify_history(delivery_id)

    async def pending_work_by_role(self) -> dict[Capability, PendingWork]:
        """Count and list deliveries awaiting each role's action."""
        return await self._notifications.pending_work_by_role()

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def create(
        self,
        actor: Actor,
        *,
        request_id: uuid.UUID,
        lines: Sequence[DeliveryLine],
        notes: str | None = None,
    ) -> TransitionResult:
        """Create a delivery cycle for an approved request.

        Args:
            actor: Warehouse or authorizer staff creating the delivery.
            request_id: Owning aid request.
            lines: Line items to deliver.
            notes: Optional notes.

        Returns:
            TransitionResult with the new delivery in PENDING_AUTHORIZATION.

        Raises:
            ForbiddenError: If the actor may not create deliveries.
            RequestNotFoundError: If the request does not exist.
            WorkflowValidationError: If the request cannot take this delivery.
        """
        try:
            self._guard.require(WorkflowAction.CREATE, None, actor)

            if not lines:
                raise WorkflowValidationError(
                    "A delivery needs at least one line", field="details"
                )
            for line_no, line in enumerate(lines, start=1):
                line.validate(line_no)

            request = await self._fulfillment.load_request(request_id, lock=True)
            self._fulfillment.ensure_accepts_deliveries(request)
            if await self._fulfillment.has_pending_authorization(request_id):
                raise WorkflowValidationError(
                    f"Request {request.code} already has a delivery pending authorization",
                    field="request_id",
                )

            proposed = line_quantities(lines)
            committed = await self._fulfillment.ensure_within_requested(request, proposed)

            now = datetime.now(UTC)
            delivery = Delivery(
                delivery_id=uuid.uuid4(),
                code=generate_delivery_code(
                    self._settings.code_prefix, self._settings.code_length, year=now.year
                ),
                request_id=request_id,
                status=DeliveryStatus.PENDING_AUTHORIZATION,
                created_by=actor.actor_id,
                created_at=now,
                updated_at=now,
                notes=notes,
                is_partial=self._fulfillment.is_partial(request, committed, proposed),
                is_partial_auth=False,
                details=[
                    DeliveryDetail(
                        detail_id=uuid.uuid4(),
                        line_no=line_no,
                        product_id=line.product_id,
                        kit_id=line.kit_id,
                        lot_id=line.lot_id,
                        quantity=line.quantity,
                    )
                    for line_no, line in enumerate(lines, start=1)
                ],
            )
            self._session.add(delivery)

            entry = await self._audit.append(
                delivery_id=delivery.delivery_id,
                action=WorkflowAction.CREATE.value,
                from_status=None,
                to_status=DeliveryStatus.PENDING_AUTHORIZATION,
                user_id=actor.actor_id,
                notes=notes or "Delivery created",
                created_at=now,
            )
            self._notifications.emit_work_item(delivery, actor_id=actor.actor_id, created=True)
            await self._session.flush()

        except (StaleDataError, IntegrityError) as exc:
            await self._session.rollback()
            logger.warning(
                "Delivery creation conflicted",
                extra={"request_id": str(request_id), "error": str(exc)},
            )
            raise ConflictError(None, "Delivery creation conflicted; retry") from exc
        except Exception:
            await self._session.rollback()
            raise

        logger.info(
            "Delivery created",
            extra={
                "delivery_id": str(delivery.delivery_id),
                "code": delivery.code,
                "request_id": str(request_id),
                "actor_id": str(actor.actor_id),
                "is_partial": delivery.is_partial,
            },
        )
        return TransitionResult(
            delivery=delivery,
            previous_status=None,
            new_status=delivery.status,
            history_entry=entry,
        )

    async def authorize(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        notes: str | None = None,
        is_partial_auth: bool = False,
        authorized_quantities: Mapping[uuid.UUID, int] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Authorize a delivery, optionally for fewer units than requested.

        Reduced quantities replace the line quantities; they are what will
        be deducted from stock when the delivery becomes ready.

        Args:
            delivery_id: Delivery to authorize.
            actor: Authorizer; must not be the creator.
            notes: Authorization notes.
            is_partial_auth: Mark the authorization as partial.
            authorized_quantities: detail_id -> authorized quantity.
            expected_version: Version the caller last saw.
        """

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            details = {detail.detail_id: detail for detail in delivery.details}
            reductions: dict[uuid.UUID, int] = {}
            for detail_id, quantity in (authorized_quantities or {}).items():
                detail = details.get(detail_id)
                if detail is None:
                    raise WorkflowValidationError(
                        f"Line {detail_id} is not part of delivery {delivery.code}",
                        field="authorized_quantities",
                    )
                if not 1 <= quantity <= detail.quantity:
                    raise WorkflowValidationError(
                        f"Authorized quantity for line {detail.line_no} must be between "
                        f"1 and {detail.quantity}",
                        field="authorized_quantities",
                    )
                if quantity < detail.quantity:
                    reductions[detail_id] = quantity

            request = await self._fulfillment.load_request(delivery.request_id)
            proposed: dict[ItemKey, int] = defaultdict(int)
            for detail in delivery.details:
                proposed[detail.item_key] += reductions.get(detail.detail_id, detail.quantity)
            committed = await self._fulfillment.ensure_within_requested(
                request, dict(proposed), exclude_delivery_id=delivery.delivery_id
            )

            # Lines change only once every check has passed
            for detail_id, quantity in reductions.items():
                details[detail_id].quantity = quantity

            delivery.authorized_by = actor_id
            delivery.authorization_date = now
            delivery.authorization_notes = notes
            delivery.is_partial_auth = is_partial_auth or bool(reductions)
            delivery.authorized_quantities = {
                str(detail.detail_id): detail.quantity for detail in delivery.details
            }
            delivery.is_partial = delivery.is_partial_auth or self._fulfillment.is_partial(
                request, committed, proposed
            )

        return await self._run(
            WorkflowAction.AUTHORIZE,
            delivery_id,
            actor,
            apply,
            notes=notes or "Delivery authorized",
            expected_version=expected_version,
        )

    async def receive_in_warehouse(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Record that the warehouse received the authorized order."""

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            delivery.warehouse_user = actor_id
            delivery.warehouse_received_date = now
            delivery.warehouse_notes = notes

        return await self._run(
            WorkflowAction.RECEIVE_IN_WAREHOUSE,
            delivery_id,
            actor,
            apply,
            notes=notes or "Received in warehouse",
            expected_version=expected_version,
        )

    async def start_preparation(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Record that picking and packing started."""

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            delivery.prepared_by = actor_id
            delivery.preparation_date = now
            delivery.preparation_notes = notes

        return await self._run(
            WorkflowAction.START_PREPARATION,
            delivery_id,
            actor,
            apply,
            notes=notes or "Preparation started",
            expected_version=expected_version,
        )

    async def mark_ready(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Mark a delivery packed and deduct its stock.

        Raises:
            InsufficientStockError: If any line cannot be covered. The
                delivery stays IN_PREPARATION and no stock is touched.
        """

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            request = await self._fulfillment.load_request(delivery.request_id)
            await self._fulfillment.ensure_within_requested(
                request,
                line_quantities(delivery.details),
                exclude_delivery_id=delivery.delivery_id,
            )
            await self._inventory.deduct(delivery, actor_id)
            delivery.ready_date = now

        return await self._run(
            WorkflowAction.MARK_READY,
            delivery_id,
            actor,
            apply,
            notes=notes or "Delivery ready, inventory deducted",
            expected_version=expected_version,
        )

    async def confirm_delivery(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        received_by: str | None,
        receiver_document: str | None,
        receiver_signature: str | None = None,
        reception_notes: str | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Record the hand-off to the beneficiary.

        Args:
            delivery_id: Delivery handed over.
            actor: Dispatcher; must be neither the authorizer nor the preparer.
            received_by: Name of the person receiving the items.
            receiver_document: Identity document of that person.
            receiver_signature: Optional captured signature.
            reception_notes: Optional notes about the reception.
            notes: Dispatcher notes.
            expected_version: Version the caller last saw.

        Raises:
            WorkflowValidationError: If the receiver identity is missing or
                the request would be over-delivered.
        """

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            if _blank(received_by):
                raise WorkflowValidationError(
                    "Receiver name is required to confirm a delivery", field="received_by"
                )
            if _blank(receiver_document):
                raise WorkflowValidationError(
                    "Receiver document is required to confirm a delivery",
                    field="receiver_document",
                )

            await self._fulfillment.record_delivery(delivery, actor_id)

            delivery.delivered_by = actor_id
            delivery.delivery_date = now
            delivery.delivery_notes = notes
            delivery.received_by = received_by.strip()
            delivery.receiver_document = receiver_document.strip()
            delivery.receiver_signature = receiver_signature
            delivery.reception_notes = reception_notes
            delivery.reception_date = now

        return await self._run(
            WorkflowAction.CONFIRM_DELIVERY,
            delivery_id,
            actor,
            apply,
            notes=notes or f"Delivered to {received_by}",
            expected_version=expected_version,
        )

    async def cancel(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        *,
        reason: str | None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Cancel a delivery from any non-terminal status.

        Stock deducted when the delivery became ready is restored.

        Raises:
            WorkflowValidationError: If no reason is given.
        """

        async def apply(delivery: Delivery, actor_id: uuid.UUID, now: datetime) -> None:
            if _blank(reason):
                raise WorkflowValidationError(
                    "A reason is required to cancel a delivery", field="reason"
                )
            if delivery.status == DeliveryStatus.READY:
                await self._inventory.reverse(delivery, actor_id)

            delivery.cancelled_by = actor_id
            delivery.cancellation_date = now
            delivery.cancellation_reason = reason.strip()

        return await self._run(
            WorkflowAction.CANCEL,
            delivery_id,
            actor,
            apply,
            notes=f"Cancelled: {reason.strip()}" if not _blank(reason) else None,
            expected_version=expected_version,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run(
        self,
        action: WorkflowAction,
        delivery_id: uuid.UUID,
        actor: Actor,
        apply: Callable[[Delivery, uuid.UUID, datetime], Awaitable[None]],
        *,
        notes: str | None,
        expected_version: int | None,
    ) -> TransitionResult:
        """Run one action as a single unit of work.

        Order: load, source status, version, guard, side effects, new status,
        audit record, work item, flush. Any failure rolls the session back.
        """
        sources, target = self.TRANSITIONS[action]

        try:
            delivery = await self.get_delivery(delivery_id)
            from_status = delivery.status

            if from_status not in sources:
                reason = None
                if self.is_terminal_status(from_status):
                    reason = f"Delivery {delivery.code} is already {from_status.value}"
                raise InvalidTransitionError(action, from_status, reason)

            if expected_version is not None and delivery.version != expected_version:
                raise ConflictError(delivery_id)

            self._guard.require(action, delivery, actor)

            now = datetime.now(UTC)
            await apply(delivery, actor.actor_id, now)

            delivery.status = target
            delivery.updated_at = now

            entry = await self._audit.append(
                delivery_id=delivery_id,
                action=action.value,
                from_status=from_status,
                to_status=target,
                user_id=actor.actor_id,
                notes=notes,
                created_at=now,
            )
            self._notifications.emit_work_item(
                delivery, actor_id=actor.actor_id, from_status=from_status
            )
            await self._session.flush()

        except (StaleDataError, IntegrityError) as exc:
            await self._session.rollback()
            logger.warning(
                "Concurrent delivery transition lost the race",
                extra={"delivery_id": str(delivery_id), "action": action.value},
            )
            raise ConflictError(delivery_id) from exc
        except InvalidTransitionError:
            await self._session.rollback()
            logger.warning(
                "Invalid transition attempted",
                extra={
                    "delivery_id": str(delivery_id),
                    "action": action.value,
                    "actor_id": str(actor.actor_id),
                },
            )
            raise
        except Exception:
            await self._session.rollback()
            raise

        logger.info(
            "Delivery transition applied",
            extra={
                "delivery_id": str(delivery_id),
                "action": action.value,
                "from_status": from_status.value,
                "to_status": target.value,
                "actor_id": str(actor.actor_id),
            },
        )
        return TransitionResult(
            delivery=delivery,
            previous_status=from_status,
            new_status=target,
            history_entry=entry,
        )
