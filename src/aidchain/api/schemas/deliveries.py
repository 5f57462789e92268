"""Pydantic schemas for the delivery workflow API.

Request bodies forbid unknown fields. Payload rules that belong to the
workflow (receiver identity, cancellation reason, line shape) are enforced by
the engine, not here, so they surface as workflow validation errors.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from aidchain.db.models.base import Capability, DeliveryStatus  # noqa: TC001

# -----------------------------------------------------------------------------
# Action request schemas
# -----------------------------------------------------------------------------


class DeliveryLineInput(BaseModel):
    """One line of a new delivery: a product or a kit."""

    product_id: UUID | None = Field(None, description="Product delivered")
    kit_id: UUID | None = Field(None, description="Kit delivered")
    lot_id: UUID | None = Field(None, description="Optional lot for a product line")
    quantity: int = Field(..., ge=1, description="Units (or kits) to deliver")

    model_config = ConfigDict(extra="forbid")


class CreateDeliveryRequest(BaseModel):
    """Request schema for creating a delivery against an approved request."""

    request_id: UUID = Field(..., description="Owning aid request")
    details: list[DeliveryLineInput] = Field(..., min_length=1, description="Line items")
    notes: str | None = Field(None, max_length=5000, description="Creation notes")

    model_config = ConfigDict(extra="forbid")


class TransitionRequest(BaseModel):
    """Common body of workflow actions."""

    notes: str | None = Field(None, max_length=5000, description="Notes for this step")
    version: int | None = Field(
        None,
        ge=1,
        description="Delivery version the caller last saw; rejects stale actions",
    )

    model_config = ConfigDict(extra="forbid")


class AuthorizeRequest(TransitionRequest):
    """Request schema for authorizing a delivery."""

    is_partial_auth: bool = Field(False, description="Authorize only part of the request")
    authorized_quantities: dict[UUID, int] | None = Field(
        None,
        description="Line id -> authorized quantity, at most the line quantity",
    )


class ConfirmDeliveryRequest(TransitionRequest):
    """Request schema for the hand-off to the beneficiary."""

    received_by: str | None = Field(None, max_length=255, description="Receiver name")
    receiver_document: str | None = Field(
        None, max_length=100, description="Receiver identity document"
    )
    receiver_signature: str | None = Field(None, description="Captured signature")
    reception_notes: str | None = Field(None, max_length=5000, description="Reception notes")


class CancelRequest(BaseModel):
    """Request schema for cancelling a delivery."""

    reason: str | None = Field(None, max_length=5000, description="Cancellation reason")
    version: int | None = Field(None, ge=1, description="Delivery version last seen")

    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Response schemas
# -----------------------------------------------------------------------------


class DeliveryDetailResponse(BaseModel):
    """Line item of a delivery."""

    detail_id: UUID
    line_no: int
    product_id: UUID | None = None
    kit_id: UUID | None = None
    lot_id: UUID | None = None
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class DeliveryResponse(BaseModel):
    """Full delivery, including every step's actor and timestamp."""

    delivery_id: UUID = Field(..., description="Unique delivery identifier")
    code: str = Field(..., description="Human-readable delivery code")
    request_id: UUID = Field(..., description="Owning aid request")
    status: DeliveryStatus = Field(..., description="Current workflow status")
    version: int | None = Field(None, description="Optimistic concurrency version")
    notes: str | None = None
    is_partial: bool = False
    created_by: UUID
    created_at: datetime | None = None
    updated_at: datetime | None = None

    authorized_by: UUID | None = None
    authorization_date: datetime | None = None
    authorization_notes: str | None = None
    is_partial_auth: bool = False
    authorized_quantities: dict[str, int] | None = None

    warehouse_user: UUID | None = None
    warehouse_received_date: datetime | None = None
    warehouse_notes: str | None = None

    prepared_by: UUID | None = None
    preparation_date: datetime | None = None
    preparation_notes: str | None = None
    ready_date: datetime | None = None

    delivered_by: UUID | None = None
    delivery_date: datetime | None = None
    delivery_notes: str | None = None

    received_by: str | None = None
    receiver_document: str | None = None
    receiver_signature: str | None = None
    reception_notes: str | None = None
    reception_date: datetime | None = None

    cancelled_by: UUID | None = None
    cancellation_date: datetime | None = None
    cancellation_reason: str | None = None

    details: list[DeliveryDetailResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class DeliverySummary(BaseModel):
    """Summary response for delivery listings."""

    delivery_id: UUID
    code: str
    request_id: UUID
    status: DeliveryStatus
    is_partial: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DeliveryListResponse(BaseModel):
    """Response schema for listing deliveries."""

    items: list[DeliverySummary] = Field(..., description="Deliveries on this page")
    offset: int = Field(0, description="Pagination offset")
    limit: int = Field(50, description="Page size")


class HistoryEntryResponse(BaseModel):
    """One audit record of a delivery."""

    seq_no: int
    action: str
    from_status: DeliveryStatus | None = None
    to_status: DeliveryStatus
    user_id: UUID
    notes: str | None = None
    created_at: datetime
    record_hash: str

    model_config = ConfigDict(from_attributes=True)


class HistoryResponse(BaseModel):
    """Ordered audit history of a delivery."""

    delivery_id: UUID
    entries: list[HistoryEntryResponse]


class HistoryVerificationResponse(BaseModel):
    """Result of verifying a delivery's audit hash chain."""

    delivery_id: UUID
    valid: bool
    checked_records: int
    errors: list[str] = Field(default_factory=list)


class StatusSummaryResponse(BaseModel):
    """Delivery counts per status."""

    counts: dict[DeliveryStatus, int]
    total: int


class PendingWorkResponse(BaseModel):
    """Deliveries awaiting one role's action."""

    role: Capability
    count: int
    deliveries: list[DeliverySummary]


class PendingWorkListResponse(BaseModel):
    """Work queues of every role."""

    queues: list[PendingWorkResponse]
