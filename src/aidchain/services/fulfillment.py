"""Fulfillment tracker: requested versus delivered quantities per request.

A request may be served by several delivery cycles. This tracker keeps two
guarantees across those cycles:
- The quantities of a request's non-cancelled deliveries never exceed what
  was requested, per line item (checked on create, authorize and mark_ready).
- quantity_delivered never exceeds quantity_requested; when every item is
  complete the request becomes DELIVERED, otherwise PARTIALLY_DELIVERED.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from aidchain.db.models.base import DeliveryStatus, RequestStatus
from aidchain.db.models.deliveries import Delivery, DeliveryDetail
from aidchain.db.models.requests import AidRequest, RequestHistory
from aidchain.services.errors import RequestNotFoundError, WorkflowValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ItemKey = tuple[str, uuid.UUID]

# Request statuses that accept a new delivery cycle
DELIVERABLE_REQUEST_STATUSES = frozenset(
    {RequestStatus.APPROVED, RequestStatus.PARTIALLY_DELIVERED}
)


def line_quantities(details: Iterable[DeliveryDetail]) -> dict[ItemKey, int]:
    """Sum delivery line quantities per requested item."""
    totals: dict[ItemKey, int] = defaultdict(int)
    for detail in details:
        totals[detail.item_key] += detail.quantity
    return dict(totals)


def format_item_key(key: ItemKey) -> str:
    kind, item_id = key
    return f"{kind} {item_id}"


def check_within_requested(
    requested: Mapping[ItemKey, int],
    committed: Mapping[ItemKey, int],
    proposed: Mapping[ItemKey, int],
) -> None:
    """Check that committed plus proposed quantities fit the request.

    Args:
        requested: Requested quantity per item.
        committed: Quantity already held by other non-cancelled deliveries.
        proposed: Quantity of the delivery being checked.

    Raises:
        WorkflowValidationError: If an item is not part of the request or
            its total would exceed the requested quantity.
    """
    for key, quantity in proposed.items():
        if key not in requested:
            raise WorkflowValidationError(
                f"{format_item_key(key)} is not part of the request",
                field="details",
            )
        remaining = requested[key] - committed.get(key, 0)
        if quantity > remaining:
            raise WorkflowValidationError(
                f"Quantity {quantity} for {format_item_key(key)} exceeds the "
                f"remaining requested quantity {max(remaining, 0)}",
                field="details",
            )


def exhausts_request(
    requested: Mapping[ItemKey, int],
    committed: Mapping[ItemKey, int],
    proposed: Mapping[ItemKey, int],
) -> bool:
    """Whether committed plus proposed quantities cover every requested item."""
    return all(
        committed.get(key, 0) + proposed.get(key, 0) >= quantity
        for key, quantity in requested.items()
    )


class FulfillmentTracker:
    """Reconciles requested and delivered quantities for aid requests."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the tracker.

        Args:
            session: SQLAlchemy async session for database operations.
        """
        self._session = session

    async def load_request(self, request_id: uuid.UUID, *, lock: bool = False) -> AidRequest:
        """Load an aid request with its items.

        Args:
            request_id: Request to load.
            lock: Lock the request row until the transaction ends.

        Raises:
            RequestNotFoundError: If the request does not exist.
        """
        query = select(AidRequest).where(AidRequest.request_id == request_id)
        if lock:
            query = query.with_for_update()
        result = await self._session.execute(query)
        request = result.scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def ensure_accepts_deliveries(self, request: AidRequest) -> None:
        """Require the request to be open for a new delivery cycle.

        Raises:
            WorkflowValidationError: If the request status does not allow it.
        """
        if request.status not in DELIVERABLE_REQUEST_STATUSES:
            raise WorkflowValidationError(
                f"Request {request.code} is {request.status.value}; deliveries can only "
                "be created for approved or partially delivered requests",
                field="request_id",
            )

    async def has_pending_authorization(self, request_id: uuid.UUID) -> bool:
        """Whether the request already has a delivery awaiting authorization."""
        query = (
            select(Delivery)
            .where(
                Delivery.request_id == request_id,
                Delivery.status == DeliveryStatus.PENDING_AUTHORIZATION,
            )
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none() is not None

    async def committed_quantities(
        self,
        request_id: uuid.UUID,
        *,
        exclude_delivery_id: uuid.UUID | None = None,
    ) -> dict[ItemKey, int]:
        """Sum line quantities of a request's non-cancelled deliveries.

        Args:
            request_id: Request to sum.
            exclude_delivery_id: Delivery left out of the sum (the one being checked).
        """
        query = (
            select(DeliveryDetail)
            .join(Delivery, Delivery.delivery_id == DeliveryDetail.delivery_id)
            .where(
                Delivery.request_id == request_id,
                Delivery.status != DeliveryStatus.CANCELLED,
            )
        )
        if exclude_delivery_id is not None:
            query = query.where(Delivery.delivery_id != exclude_delivery_id)
        result = await self._session.execute(query)
        return line_quantities(result.scalars().all())

    async def ensure_within_requested(
        self,
        request: AidRequest,
        proposed: Mapping[ItemKey, int],
        *,
        exclude_delivery_id: uuid.UUID | None = None,
    ) -> dict[ItemKey, int]:
        """Check proposed quantities against the request.

        Returns:
            The committed quantities of the other deliveries.

        Raises:
            WorkflowValidationError: If the request would be over-committed.
        """
        committed = await self.committed_quantities(
            request.request_id, exclude_delivery_id=exclude_delivery_id
        )
        requested = {item.item_key: item.quantity_requested for item in request.items}
        check_within_requested(requested, committed, proposed)
        return committed

    def is_partial(
        self,
        request: AidRequest,
        committed: Mapping[ItemKey, int],
        proposed: Mapping[ItemKey, int],
    ) -> bool:
        """Whether this cycle leaves part of the request undelivered."""
        requested = {item.item_key: item.quantity_requested for item in request.items}
        return not exhausts_request(requested, committed, proposed)

    async def record_delivery(self, delivery: Delivery, actor_id: uuid.UUID) -> RequestStatus:
        """Add a delivered cycle's quantities to its request.

        Args:
            delivery: Delivery being confirmed.
            actor_id: Dispatcher confirming the delivery.

        Returns:
            The request's resulting status.

        Raises:
            WorkflowValidationError: If any item would exceed its requested quantity.
        """
        request = await self.load_request(delivery.request_id, lock=True)
        delivered = line_quantities(delivery.details)
        items = {item.item_key: item for item in request.items}

        for key, quantity in delivered.items():
            item = items.get(key)
            if item is None:
                raise WorkflowValidationError(
                    f"{format_item_key(key)} is not part of request {request.code}",
                    field="details",
                )
            if item.quantity_delivered + quantity > item.quantity_requested:
                raise WorkflowValidationError(
                    f"Delivering {quantity} of {format_item_key(key)} would exceed the "
                    f"requested quantity {item.quantity_requested} "
                    f"(already delivered {item.quantity_delivered})",
                    field="details",
                )

        for key, quantity in delivered.items():
            items[key].quantity_delivered += quantity

        previous = request.status
        complete = all(item.quantity_delivered >= item.quantity_requested for item in request.items)
        request.status = RequestStatus.DELIVERED if complete else RequestStatus.PARTIALLY_DELIVERED
        request.updated_at = datetime.now(UTC)

        if request.status != previous:
            self._session.add(
                RequestHistory(
                    request_id=request.request_id,
                    from_status=previous,
                    to_status=request.status,
                    user_id=actor_id,
                    notes=f"Delivery {delivery.code} confirmed",
                )
            )

        logger.info(
            "Fulfillment recorded",
            extra={
                "request_id": str(request.request_id),
                "delivery_id": str(delivery.delivery_id),
                "request_status": request.status.value,
            },
        )
        return request.status
