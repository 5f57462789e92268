"""Delivery-related models: deliveries and their line items.

A delivery is one fulfillment cycle of an aid request. Its status column is
the single source of truth for the workflow; the version column guards
against concurrent transitions of the same delivery.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from aidchain.db.models.base import (
    Base,
    DeliveryStatus,
    OptionalActorRef,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)

if TYPE_CHECKING:
    from aidchain.db.models.inventory import Kit, Product, ProductLot
    from aidchain.db.models.requests import AidRequest


class Delivery(Base):
    """One delivery cycle for an aid request.

    Each workflow step records who performed it, when, and optional notes.
    Reception fields are only populated on the final delivered transition.
    """

    __tablename__ = "deliveries"

    delivery_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Human-readable code, e.g. ENT-2026-K3Z9QA. Never reassigned.
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("aid_requests.request_id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
        nullable=False,
        default=DeliveryStatus.PENDING_AUTHORIZATION,
    )

    # Optimistic concurrency counter, bumped on every flush of this row
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Authorization step
    authorized_by: Mapped[OptionalActorRef]
    authorization_date: Mapped[OptionalTimestampTZ]
    authorization_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_partial_auth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # detail_id -> authorized quantity, as submitted by the authorizer
    authorized_quantities: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Warehouse reception step
    warehouse_user: Mapped[OptionalActorRef]
    warehouse_received_date: Mapped[OptionalTimestampTZ]
    warehouse_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Preparation step (start_preparation and mark_ready)
    prepared_by: Mapped[OptionalActorRef]
    preparation_date: Mapped[OptionalTimestampTZ]
    preparation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    ready_date: Mapped[OptionalTimestampTZ]

    # Dispatch step
    delivered_by: Mapped[OptionalActorRef]
    delivery_date: Mapped[OptionalTimestampTZ]
    delivery_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Beneficiary reception
    received_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receiver_document: Mapped[str | None] = mapped_column(String(100), nullable=True)
    receiver_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    reception_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reception_date: Mapped[OptionalTimestampTZ]

    # Cancellation
    cancelled_by: Mapped[OptionalActorRef]
    cancellation_date: Mapped[OptionalTimestampTZ]
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    request: Mapped[AidRequest] = relationship(
        "AidRequest",
        back_populates="deliveries",
        lazy="raise",
    )
    details: Mapped[list[DeliveryDetail]] = relationship(
        "DeliveryDetail",
        back_populates="delivery",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DeliveryDetail.line_no",
    )

    __mapper_args__ = {"version_id_col": version}  # noqa: RUF012

    __table_args__ = (
        Index("ix_deliveries_request_id", "request_id"),
        Index("ix_deliveries_status", "status"),
        Index("ix_deliveries_created_at", "created_at"),
    )


class DeliveryDetail(Base):
    """Line item of a delivery: a product or a kit, with a quantity.

    Quantities become immutable once the delivery reaches READY; they are
    exactly what the inventory coordinator deducted.
    """

    __tablename__ = "delivery_details"

    detail_id: Mapped[UUIDPrimaryKey]

    delivery_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliveries.delivery_id", ondelete="CASCADE"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    product_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.product_id", ondelete="RESTRICT"),
        nullable=True,
    )
    kit_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("kits.kit_id", ondelete="RESTRICT"),
        nullable=True,
    )
    # Pinned lot; set by the creator or by FEFO allocation when a single lot served the line
    lot_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("product_lots.lot_id", ondelete="RESTRICT"),
        nullable=True,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    delivery: Mapped[Delivery] = relationship("Delivery", back_populates="details")
    product: Mapped[Product | None] = relationship("Product", lazy="raise")
    kit: Mapped[Kit | None] = relationship("Kit", lazy="raise")
    lot: Mapped[ProductLot | None] = relationship("ProductLot", lazy="raise")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint(
            "(product_id IS NULL) <> (kit_id IS NULL)",
            name="product_xor_kit",
        ),
        Index("ix_delivery_details_delivery_id", "delivery_id"),
    )

    @property
    def item_key(self) -> tuple[str, uuid.UUID]:
        """Key identifying the requested item this line draws from."""
        if self.product_id is not None:
            return ("product", self.product_id)
        return ("kit", self.kit_id)
