"""Work-item outbox model.

Each successful transition leaves one row per notified role. Rows are
written in the same transaction as the transition and drained by an
external dispatcher using SELECT ... FOR UPDATE SKIP LOCKED.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from aidchain.db.models.base import (
    Base,
    Capability,
    DeliveryStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class WorkItemEvent(Base):
    """A delivery awaiting action from a role."""

    __tablename__ = "work_item_events"

    event_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    delivery_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliveries.delivery_id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[Capability] = mapped_column(
        Enum(Capability, name="capability", create_constraint=True),
        nullable=False,
    )
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
        nullable=False,
    )
    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Set by the dispatcher once the event left the outbox
    dispatched_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_work_item_events_pending", "dispatched_at", "created_at"),
        Index("ix_work_item_events_delivery_id", "delivery_id"),
    )
