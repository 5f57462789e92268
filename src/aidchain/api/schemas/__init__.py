"""Pydantic request/response schemas for the aidchain API."""

from aidchain.api.schemas.deliveries import (
    AuthorizeRequest,
    CancelRequest,
    ConfirmDeliveryRequest,
    CreateDeliveryRequest,
    DeliveryDetailResponse,
    DeliveryLineInput,
    DeliveryListResponse,
    DeliveryResponse,
    DeliverySummary,
    HistoryEntryResponse,
    HistoryResponse,
    HistoryVerificationResponse,
    PendingWorkListResponse,
    PendingWorkResponse,
    StatusSummaryResponse,
    TransitionRequest,
)

__all__ = [
    "AuthorizeRequest",
    "CancelRequest",
    "ConfirmDeliveryRequest",
    "CreateDeliveryRequest",
    "DeliveryDetailResponse",
    "DeliveryLineInput",
    "DeliveryListResponse",
    "DeliveryResponse",
    "DeliverySummary",
    "HistoryEntryResponse",
    "HistoryResponse",
    "HistoryVerificationResponse",
    "PendingWorkListResponse",
    "PendingWorkResponse",
    "StatusSummaryResponse",
    "TransitionRequest",
]
