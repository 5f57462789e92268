"""Inventory models: products, kits, stock lots and stock movements.

Lots are the unit of inventory deduction. Every quantity change made by the
workflow is mirrored by a StockMovement row referencing the delivery, which
is what a reversal restores from.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import date  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from aidchain.db.models.base import (
    Base,
    MovementType,
    OptionalActorRef,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Product(Base):
    """Stock-keeping item distributed to beneficiaries."""

    __tablename__ = "products"

    product_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(50), nullable=False, default="unit")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Kit(Base):
    """Bundle of products handed out as one unit (e.g. a hygiene kit)."""

    __tablename__ = "kits"

    kit_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    components: Mapped[list[KitComponent]] = relationship(
        "KitComponent",
        back_populates="kit",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class KitComponent(Base):
    """Quantity of a product contained in one kit."""

    __tablename__ = "kit_components"

    component_id: Mapped[UUIDPrimaryKey]

    kit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("kits.kit_id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.product_id", ondelete="RESTRICT"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    kit: Mapped[Kit] = relationship("Kit", back_populates="components")

    __table_args__ = (
        UniqueConstraint("kit_id", "product_id", name="uq_kit_components_kit_product"),
        CheckConstraint("quantity > 0", name="positive_quantity"),
    )


class ProductLot(Base):
    """Batch of a product sharing an expiry and entry date."""

    __tablename__ = "product_lots"

    lot_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.product_id", ondelete="RESTRICT"),
        nullable=False,
    )
    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        # Backstop for the conditional decrement in the stock ledger
        CheckConstraint("quantity >= 0", name="non_negative_quantity"),
        UniqueConstraint("product_id", "lot_number", name="uq_product_lots_product_lot_number"),
        # FEFO scan: active lots of a product by expiry then entry date
        Index("ix_product_lots_fefo", "product_id", "is_active", "expiry_date", "entry_date"),
    )


class StockMovement(Base):
    """Ledger row for every change in lot quantity."""

    __tablename__ = "stock_movements"

    movement_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.product_id", ondelete="RESTRICT"),
        nullable=False,
    )
    lot_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("product_lots.lot_id", ondelete="RESTRICT"),
        nullable=False,
    )
    movement_type: Mapped[MovementType] = mapped_column(
        Enum(MovementType, name="movement_type", create_constraint=True),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Delivery id for workflow-driven movements
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_id: Mapped[OptionalActorRef]

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        Index("ix_stock_movements_reference", "reference", "movement_type"),
        Index("ix_stock_movements_lot_id", "lot_id"),
    )
