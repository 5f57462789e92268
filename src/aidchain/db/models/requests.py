"""Aid request models owned by the upstream request service.

The workflow core reads requested quantities and the request status, and
writes back delivered quantities and the resulting status.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from aidchain.db.models.base import (
    Base,
    RequestStatus,
    TimestampTZ,
    UUIDPrimaryKey,
)

if TYPE_CHECKING:
    from aidchain.db.models.deliveries import Delivery


class AidRequest(Base):
    """Beneficiary request that one or more deliveries fulfill."""

    __tablename__ = "aid_requests"

    request_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="request_status", create_constraint=True),
        nullable=False,
        default=RequestStatus.REGISTERED,
    )
    beneficiary_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    items: Mapped[list[RequestItem]] = relationship(
        "RequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    deliveries: Mapped[list[Delivery]] = relationship(
        "Delivery",
        back_populates="request",
        lazy="raise",
    )

    __table_args__ = (Index("ix_aid_requests_status", "status"),)


class RequestItem(Base):
    """Requested quantity of one product or kit, and how much was delivered."""

    __tablename__ = "request_items"

    item_id: Mapped[UUIDPrimaryKey]

    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("aid_requests.request_id", ondelete="CASCADE"),
        nullable=False,
    )
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
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    request: Mapped[AidRequest] = relationship("AidRequest", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity_requested > 0", name="positive_requested"),
        CheckConstraint(
            "quantity_delivered >= 0 AND quantity_delivered <= quantity_requested",
            name="delivered_within_requested",
        ),
        CheckConstraint(
            "(product_id IS NULL) <> (kit_id IS NULL)",
            name="product_xor_kit",
        ),
        Index("ix_request_items_request_id", "request_id"),
    )

    @property
    def item_key(self) -> tuple[str, uuid.UUID]:
        """Key matching delivery lines that draw from this item."""
        if self.product_id is not None:
            return ("product", self.product_id)
        return ("kit", self.kit_id)

    @property
    def quantity_pending(self) -> int:
        """Quantity still to be delivered."""
        return self.quantity_requested - self.quantity_delivered


class RequestHistory(Base):
    """Status change of an aid request caused by a delivery."""

    __tablename__ = "request_histories"

    history_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("aid_requests.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[RequestStatus | None] = mapped_column(
        Enum(RequestStatus, name="request_status", create_constraint=True),
        nullable=True,
    )
    to_status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="request_status", create_constraint=True),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_request_histories_request_id", "request_id"),)
