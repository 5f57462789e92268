"""Delivery history records.

One immutable row per successful workflow transition. Rows are chained per
delivery by SHA-256 hashes so that any edit or deletion is detectable.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from aidchain.db.models.base import (
    Base,
    DeliveryStatus,
    TimestampTZ,
    UUIDPrimaryKey,
)


class DeliveryHistory(Base):
    """Append-only transition record of a delivery.

    from_status is NULL for the creation record.
    """

    __tablename__ = "delivery_histories"

    history_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    delivery_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliveries.delivery_id", ondelete="RESTRICT"),
        nullable=False,
    )
    # Position within the delivery's history, starting at 1
    seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False)

    from_status: Mapped[DeliveryStatus | None] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
        nullable=True,
    )
    to_status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("delivery_id", "seq_no", name="uq_delivery_histories_delivery_seq"),
        Index("ix_delivery_histories_delivery_id", "delivery_id"),
        Index("ix_delivery_histories_user_id", "user_id"),
    )
