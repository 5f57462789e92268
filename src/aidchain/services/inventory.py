"""Inventory coordinator: stock deduction and reversal for deliveries.

Covers the two inventory-affecting points of the workflow:
- deduct(): once, when a delivery enters READY. Every line is planned
  against current lot balances before anything is written, so a shortfall
  on any line fails the whole deduction.
- reverse(): once, when a READY delivery is cancelled. Restores exactly the
  quantities recorded by the EXIT movements of that delivery.

Lines pinned to a lot draw from that lot only. Other product lines are
allocated first-expiry-first-out across lots; kit lines expand into their
component products first. There is no reservation before READY.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aidchain.db.models.base import MovementType
from aidchain.services.errors import (
    ConflictError,
    InsufficientStockError,
    WorkflowValidationError,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from aidchain.db.models.deliveries import Delivery, DeliveryDetail
    from aidchain.services.stock_ledger import LotBalance, MovementRecord, StockLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Allocation:
    """Quantity of one product taken from one lot for one delivery line.

    Attributes:
        detail_id: Delivery line served.
        product_id: Product taken.
        lot_id: Lot the quantity comes from.
        quantity: Units taken.
    """

    detail_id: uuid.UUID
    product_id: uuid.UUID
    lot_id: uuid.UUID
    quantity: int


def plan_fefo(
    product_id: uuid.UUID,
    quantity: int,
    lots: Sequence[LotBalance],
    taken: dict[uuid.UUID, int],
) -> list[tuple[uuid.UUID, int]]:
    """Split a quantity across lots in the given (FEFO) order.

    Args:
        product_id: Product being allocated.
        quantity: Units needed.
        lots: Candidate lots, already in allocation order.
        taken: Units already planned per lot by earlier lines; updated in place.

    Returns:
        (lot_id, units) pairs covering the quantity.

    Raises:
        InsufficientStockError: If the lots cannot cover the quantity.
    """
    remaining = quantity
    picks: list[tuple[uuid.UUID, int]] = []

    for lot in lots:
        if remaining == 0:
            break
        available = lot.quantity - taken.get(lot.lot_id, 0)
        if available <= 0:
            continue
        units = min(available, remaining)
        picks.append((lot.lot_id, units))
        remaining -= units

    if remaining > 0:
        total_available = sum(max(lot.quantity - taken.get(lot.lot_id, 0), 0) for lot in lots)
        raise InsufficientStockError(
            product_id=product_id,
            requested=quantity,
            available=total_available,
        )

    for lot_id, units in picks:
        taken[lot_id] = taken.get(lot_id, 0) + units
    return picks


class InventoryCoordinator:
    """Deducts and restores stock tied to delivery transitions.

    Example:
        coordinator = InventoryCoordinator(StockLedger(session))
        allocations = await coordinator.deduct(delivery, actor_id)
    """

    def __init__(self, ledger: StockLedger) -> None:
        """Initialize the coordinator.

        Args:
            ledger: Stock ledger used for lot reads and writes.
        """
        self._ledger = ledger

    async def plan(self, delivery: Delivery) -> list[Allocation]:
        """Plan the lot allocations for every line of a delivery.

        Nothing is written. Raises before returning if any line cannot be
        covered.

        Raises:
            InsufficientStockError: If any line cannot be covered.
            WorkflowValidationError: If a line references an unusable lot or kit.
        """
        taken: dict[uuid.UUID, int] = defaultdict(int)
        fefo_lots: dict[uuid.UUID, list[LotBalance]] = {}
        allocations: list[Allocation] = []

        async def allocate(detail: DeliveryDetail, product_id: uuid.UUID, units: int) -> None:
            if product_id not in fefo_lots:
                fefo_lots[product_id] = await self._ledger.lots_for_allocation(product_id)
            for lot_id, lot_units in plan_fefo(product_id, units, fefo_lots[product_id], taken):
                allocations.append(
                    Allocation(
                        detail_id=detail.detail_id,
                        product_id=product_id,
                        lot_id=lot_id,
                        quantity=lot_units,
                    )
                )

        # Pinned lines claim their lots before FEFO lines draw from them
        for detail in delivery.details:
            if detail.product_id is not None and detail.lot_id is not None:
                allocations.append(await self._plan_pinned(detail, taken))

        for detail in delivery.details:
            if detail.product_id is not None and detail.lot_id is not None:
                continue
            if detail.product_id is not None:
                await allocate(detail, detail.product_id, detail.quantity)
            else:
                components = await self._ledger.kit_components(detail.kit_id)
                if not components:
                    raise WorkflowValidationError(
                        f"Kit {detail.kit_id} has no components to deduct",
                        field="details",
                    )
                for product_id, per_kit in components:
                    await allocate(detail, product_id, per_kit * detail.quantity)

        return allocations

    async def deduct(self, delivery: Delivery, actor_id: uuid.UUID) -> list[Allocation]:
        """Deduct stock for every line of a delivery.

        Args:
            delivery: Delivery entering READY.
            actor_id: User marking the delivery ready.

        Returns:
            The allocations applied.

        Raises:
            InsufficientStockError: If any lot cannot cover its allocation.
        """
        allocations = await self.plan(delivery)
        reference = str(delivery.delivery_id)

        for allocation in allocations:
            await self._ledger.deduct(
                allocation.lot_id, allocation.product_id, allocation.quantity
            )
            self._ledger.record_movement(
                movement_type=MovementType.EXIT,
                lot_id=allocation.lot_id,
                product_id=allocation.product_id,
                quantity=allocation.quantity,
                reason=f"Delivery {delivery.code}",
                reference=reference,
                user_id=actor_id,
            )

        self._pin_single_lot_lines(delivery, allocations)

        logger.info(
            "Inventory deducted for delivery",
            extra={
                "delivery_id": reference,
                "allocations": len(allocations),
                "units": sum(a.quantity for a in allocations),
            },
        )
        return allocations

    async def reverse(self, delivery: Delivery, actor_id: uuid.UUID) -> list[MovementRecord]:
        """Restore exactly what deduct() took for a delivery.

        Args:
            delivery: Delivery being cancelled after reaching READY.
            actor_id: User cancelling the delivery.

        Returns:
            The movements restored.

        Raises:
            ConflictError: If the delivery's stock was already restored.
        """
        reference = str(delivery.delivery_id)

        if await self._ledger.movements_for(reference, MovementType.RETURN):
            raise ConflictError(
                delivery.delivery_id,
                f"Stock for delivery {delivery.code} was already restored",
            )

        exits = await self._ledger.movements_for(reference, MovementType.EXIT)
        if not exits:
            logger.warning(
                "No stock exits recorded for delivery being reversed",
                extra={"delivery_id": reference},
            )

        for movement in exits:
            await self._ledger.restore(movement.lot_id, movement.quantity)
            self._ledger.record_movement(
                movement_type=MovementType.RETURN,
                lot_id=movement.lot_id,
                product_id=movement.product_id,
                quantity=movement.quantity,
                reason=f"Cancelled delivery {delivery.code}",
                reference=reference,
                user_id=actor_id,
            )

        logger.info(
            "Inventory restored for cancelled delivery",
            extra={
                "delivery_id": reference,
                "movements": len(exits),
                "units": sum(m.quantity for m in exits),
            },
        )
        return list(exits)

    async def _plan_pinned(
        self,
        detail: DeliveryDetail,
        taken: dict[uuid.UUID, int],
    ) -> Allocation:
        lot = await self._ledger.get_lot(detail.lot_id)
        if lot is None:
            raise InsufficientStockError(
                product_id=detail.product_id,
                requested=detail.quantity,
                available=0,
                lot_id=detail.lot_id,
            )
        if lot.product_id != detail.product_id:
            raise WorkflowValidationError(
                f"Lot {detail.lot_id} does not hold product {detail.product_id}",
                field="details",
            )

        available = lot.quantity - taken[lot.lot_id]
        if available < detail.quantity:
            raise InsufficientStockError(
                product_id=detail.product_id,
                requested=detail.quantity,
                available=max(available, 0),
                lot_id=lot.lot_id,
            )

        taken[lot.lot_id] += detail.quantity
        return Allocation(
            detail_id=detail.detail_id,
            product_id=detail.product_id,
            lot_id=lot.lot_id,
            quantity=detail.quantity,
        )

    @staticmethod
    def _pin_single_lot_lines(delivery: Delivery, allocations: list[Allocation]) -> None:
        lots_by_detail: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        for allocation in allocations:
            lots_by_detail[allocation.detail_id].add(allocation.lot_id)

        for detail in delivery.details:
            lots = lots_by_detail.get(detail.detail_id, set())
            if detail.product_id is not None and detail.lot_id is None and len(lots) == 1:
                detail.lot_id = next(iter(lots))
