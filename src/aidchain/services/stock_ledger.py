"""Stock ledger primitives over product lots.

The ledger is the only code that changes lot quantities. Each primitive is
safe under concurrency on its own:
- deduct() is a conditional UPDATE that only matches while the lot still
  holds enough stock, so two concurrent deductions from one lot cannot both
  succeed when the lot cannot cover both.
- lots_for_allocation() locks the candidate lots FOR UPDATE so the FEFO
  plan built from them stays valid until the transaction ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import nulls_last, select, update

from aidchain.db.models.inventory import KitComponent, ProductLot, StockMovement
from aidchain.services.errors import InsufficientStockError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence
    from datetime import date

    from sqlalchemy.ext.asyncio import AsyncSession

    from aidchain.db.models.base import MovementType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LotBalance:
    """Snapshot of a lot's available quantity.

    Attributes:
        lot_id: Lot identifier.
        product_id: Product stored in the lot.
        quantity: Units currently in the lot.
        expiry_date: Expiry date, None for non-perishables.
        entry_date: Date the lot entered the warehouse.
    """

    lot_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    expiry_date: date | None
    entry_date: date

    @classmethod
    def from_lot(cls, lot: ProductLot) -> LotBalance:
        return cls(
            lot_id=lot.lot_id,
            product_id=lot.product_id,
            quantity=lot.quantity,
            expiry_date=lot.expiry_date,
            entry_date=lot.entry_date,
        )


@dataclass(frozen=True, slots=True)
class MovementRecord:
    """A recorded stock movement tied to a delivery."""

    lot_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int


class StockLedger:
    """SQL-backed stock ledger.

    Example:
        ledger = StockLedger(session)
        await ledger.deduct(lot_id, 10)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the ledger.

        Args:
            session: SQLAlchemy async session for database operations.
        """
        self._session = session

    async def get_lot(self, lot_id: uuid.UUID) -> LotBalance | None:
        """Load and lock a single lot.

        Args:
            lot_id: Lot to load.

        Returns:
            The lot's balance, or None if it does not exist or is inactive.
        """
        query = (
            select(ProductLot)
            .where(ProductLot.lot_id == lot_id, ProductLot.is_active.is_(True))
            .with_for_update()
        )
        result = await self._session.execute(query)
        lot = result.scalar_one_or_none()
        return LotBalance.from_lot(lot) if lot is not None else None

    async def lots_for_allocation(self, product_id: uuid.UUID) -> list[LotBalance]:
        """Load and lock a product's lots in FEFO order.

        First-expiry-first-out: earliest expiry first (lots without expiry
        last), ties broken by earliest entry date. Only active lots holding
        stock are returned.

        Args:
            product_id: Product to allocate.

        Returns:
            Lot balances in allocation order.
        """
        query = (
            select(ProductLot)
            .where(
                ProductLot.product_id == product_id,
                ProductLot.is_active.is_(True),
                ProductLot.quantity > 0,
            )
            .order_by(
                nulls_last(ProductLot.expiry_date.asc()),
                ProductLot.entry_date.asc(),
                ProductLot.lot_id,
            )
            .with_for_update()
        )
        result = await self._session.execute(query)
        return [LotBalance.from_lot(lot) for lot in result.scalars().all()]

    async def kit_components(self, kit_id: uuid.UUID) -> list[tuple[uuid.UUID, int]]:
        """List (product_id, quantity per kit) for a kit."""
        query = select(KitComponent).where(KitComponent.kit_id == kit_id)
        result = await self._session.execute(query)
        return [(c.product_id, c.quantity) for c in result.scalars().all()]

    async def deduct(self, lot_id: uuid.UUID, product_id: uuid.UUID, quantity: int) -> None:
        """Atomically take quantity out of a lot.

        Args:
            lot_id: Lot to decrement.
            product_id: Product stored in the lot (for error reporting).
            quantity: Units to remove, > 0.

        Raises:
            InsufficientStockError: If the lot no longer holds quantity units.
        """
        stmt = (
            update(ProductLot)
            .where(
                ProductLot.lot_id == lot_id,
                ProductLot.is_active.is_(True),
                ProductLot.quantity >= quantity,
            )
            .values(quantity=ProductLot.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 1:
            return

        current = await self._session.execute(
            select(ProductLot.quantity).where(ProductLot.lot_id == lot_id)
        )
        available = current.scalar_one_or_none() or 0
        logger.warning(
            "Lot deduction rejected",
            extra={"lot_id": str(lot_id), "requested": quantity, "available": available},
        )
        raise InsufficientStockError(
            product_id=product_id,
            requested=quantity,
            available=available,
            lot_id=lot_id,
        )

    async def restore(self, lot_id: uuid.UUID, quantity: int) -> None:
        """Put quantity back into a lot."""
        stmt = (
            update(ProductLot)
            .where(ProductLot.lot_id == lot_id)
            .values(quantity=ProductLot.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    def record_movement(
        self,
        *,
        movement_type: MovementType,
        lot_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        reason: str,
        reference: str,
        user_id: uuid.UUID | None,
    ) -> None:
        """Add a stock movement row to the current unit of work."""
        self._session.add(
            StockMovement(
                movement_type=movement_type,
                lot_id=lot_id,
                product_id=product_id,
                quantity=quantity,
                reason=reason,
                reference=reference,
                user_id=user_id,
            )
        )

    async def movements_for(
        self,
        reference: str,
        movement_type: MovementType,
    ) -> Sequence[MovementRecord]:
        """List movements of one type recorded against a reference."""
        query = (
            select(StockMovement)
            .where(
                StockMovement.reference == reference,
                StockMovement.movement_type == movement_type,
            )
            .order_by(StockMovement.created_at, StockMovement.movement_id)
        )
        result = await self._session.execute(query)
        return [
            MovementRecord(lot_id=m.lot_id, product_id=m.product_id, quantity=m.quantity)
            for m in result.scalars().all()
        ]
