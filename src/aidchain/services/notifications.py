"""Notification router and work-item outbox.

After every successful transition the workflow engine asks this module which
role is responsible for the delivery next, and leaves a "work item
available" event for that role in the work_item_events outbox. Outbox rows
are written in the same transaction as the transition; delivering them to
people (email, chat, push) is left to an external dispatcher that drains
the outbox with claim_pending() and mark_dispatched().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from aidchain.db.models.base import Capability, DeliveryStatus
from aidchain.db.models.deliveries import Delivery
from aidchain.db.models.notifications import WorkItemEvent

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from aidchain.core.config import WorkflowSettings

logger = logging.getLogger(__name__)

WORK_ITEM_AVAILABLE = "work_item_available"

# Role that must act next on a delivery in each status
NEXT_RESPONSIBLE_ROLE: dict[DeliveryStatus, Capability | None] = {
    DeliveryStatus.PENDING_AUTHORIZATION: Capability.AUTHORIZER,
    DeliveryStatus.AUTHORIZED: Capability.WAREHOUSE,
    DeliveryStatus.RECEIVED_WAREHOUSE: Capability.WAREHOUSE,
    DeliveryStatus.IN_PREPARATION: Capability.WAREHOUSE,
    DeliveryStatus.READY: Capability.DISPATCHER,
    DeliveryStatus.DELIVERED: None,
    DeliveryStatus.CANCELLED: None,
}

# Roles that own a work queue, in dashboard order
WORK_QUEUE_ROLES = (Capability.AUTHORIZER, Capability.WAREHOUSE, Capability.DISPATCHER)


def next_responsible_role(status: DeliveryStatus) -> Capability | None:
    """Return the role that must act on a delivery in this status, if any."""
    return NEXT_RESPONSIBLE_ROLE[status]


@dataclass(slots=True)
class PendingWork:
    """Deliveries currently awaiting one role's action.

    Attributes:
        role: Role owning the queue.
        deliveries: Deliveries in the queue, oldest first.
    """

    role: Capability
    deliveries: list[Delivery] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.deliveries)


def group_pending_by_role(deliveries: Iterable[Delivery]) -> dict[Capability, PendingWork]:
    """Bucket deliveries into the work queue of their next responsible role.

    Every queue role is present in the result, empty queues included.
    Deliveries in a terminal status are dropped.
    """
    queues = {role: PendingWork(role=role) for role in WORK_QUEUE_ROLES}
    for delivery in deliveries:
        role = next_responsible_role(delivery.status)
        if role is not None:
            queues[role].deliveries.append(delivery)
    return queues


class NotificationRouter:
    """Emits work-item events and answers per-role pending work queries.

    Example:
        router = NotificationRouter(session)
        router.emit_work_item(delivery, actor_id=actor.actor_id)
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: WorkflowSettings | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Workflow settings. Defaults to the process settings.
        """
        self._session = session
        if settings is None:
            from aidchain.core.settings import get_settings

            settings = get_settings().workflow
        self._notify_admin_on_create = settings.notify_admin_on_create
        self._batch_size = settings.outbox_batch_size

    def emit_work_item(
        self,
        delivery: Delivery,
        *,
        actor_id: uuid.UUID,
        from_status: DeliveryStatus | None = None,
        created: bool = False,
    ) -> list[WorkItemEvent]:
        """Leave work-item events for the role that must act next.

        Nothing is emitted for terminal statuses. Newly created deliveries
        are also announced to administrators when configured.

        Args:
            delivery: Delivery that just transitioned.
            actor_id: User who performed the transition.
            from_status: Status before the transition.
            created: Whether the transition was the delivery's creation.

        Returns:
            The events added to the session.
        """
        role = next_responsible_role(delivery.status)
        if role is None:
            return []

        roles = [role]
        if created and self._notify_admin_on_create:
            roles.append(Capability.ADMIN)

        payload: dict[str, Any] = {
            "code": delivery.code,
            "request_id": str(delivery.request_id),
            "from_status": from_status.value if from_status is not None else None,
            "actor_id": str(actor_id),
        }

        events = []
        for target in roles:
            event = WorkItemEvent(
                event_type=WORK_ITEM_AVAILABLE,
                delivery_id=delivery.delivery_id,
                role=target,
                delivery_status=delivery.status,
                payload_json=payload,
            )
            self._session.add(event)
            events.append(event)

        logger.debug(
            "Work item emitted",
            extra={
                "delivery_id": str(delivery.delivery_id),
                "status": delivery.status.value,
                "roles": [target.value for target in roles],
            },
        )
        return events

    async def claim_pending(self, limit: int | None = None) -> Sequence[WorkItemEvent]:
        """Lock undispatched events for an outbox dispatcher.

        Uses SELECT ... FOR UPDATE SKIP LOCKED so concurrent dispatchers
        never claim the same event.

        Args:
            limit: Maximum events to claim. Defaults to the configured batch size.

        Returns:
            Claimed events, oldest first.
        """
        query = (
            select(WorkItemEvent)
            .where(WorkItemEvent.dispatched_at.is_(None))
            .order_by(WorkItemEvent.created_at, WorkItemEvent.event_id)
            .limit(limit or self._batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def mark_dispatched(self, event_ids: Sequence[uuid.UUID]) -> int:
        """Mark claimed events as dispatched.

        Returns:
            Number of events updated.
        """
        if not event_ids:
            return 0

        stmt = (
            update(WorkItemEvent)
            .where(
                WorkItemEvent.event_id.in_(event_ids),
                WorkItemEvent.dispatched_at.is_(None),
            )
            .values(dispatched_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        logger.info("Work items dispatched", extra={"count": result.rowcount})
        return result.rowcount

    async def pending_work_by_role(self) -> dict[Capability, PendingWork]:
        """Count and list the deliveries awaiting each role's action.

        Derived from current delivery status, not from the outbox.
        """
        waiting = [status for status, role in NEXT_RESPONSIBLE_ROLE.items() if role is not None]
        query = (
            select(Delivery)
            .where(Delivery.status.in_(waiting))
            .order_by(Delivery.created_at, Delivery.delivery_id)
        )
        result = await self._session.execute(query)
        return group_pending_by_role(result.scalars().all())
