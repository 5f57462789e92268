"""Typed failures raised by the delivery workflow core.

Every failure leaves the delivery and its history untouched. None of them is
retried automatically; callers reload state and retry after correcting the
triggering condition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

    from aidchain.db.models.base import DeliveryStatus
    from aidchain.services.segregation import SegregationRule, WorkflowAction


class WorkflowError(Exception):
    """Base exception for workflow failures.

    Attributes:
        code: Machine-readable error code.
        message: Human-readable description.
    """

    code = "workflow_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidTransitionError(WorkflowError):
    """Raised when an action is not legal from the delivery's current status."""

    code = "invalid_transition"

    def __init__(
        self,
        action: WorkflowAction,
        current_status: DeliveryStatus,
        reason: str | None = None,
    ) -> None:
        self.action = action
        self.current_status = current_status
        super().__init__(
            reason or f"Cannot {action.value} a delivery in status {current_status.value}"
        )


class ForbiddenError(WorkflowError):
    """Raised when the duty segregation guard rejects the actor.

    Carries the specific rule that failed so it can be surfaced to the actor.
    """

    code = "forbidden"

    def __init__(self, action: WorkflowAction, rule: SegregationRule, reason: str) -> None:
        self.action = action
        self.rule = rule
        super().__init__(reason)


class WorkflowValidationError(WorkflowError):
    """Raised when a required payload field is missing or a quantity is invalid."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InsufficientStockError(WorkflowError):
    """Raised when a lot or product cannot cover a deduction."""

    code = "insufficient_stock"

    def __init__(
        self,
        product_id: UUID,
        requested: int,
        available: int,
        lot_id: UUID | None = None,
    ) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.lot_id = lot_id
        where = f"lot {lot_id}" if lot_id else f"product {product_id}"
        super().__init__(
            f"Insufficient stock in {where}: requested {requested}, available {available}"
        )


class ConflictError(WorkflowError):
    """Raised when a concurrent transition of the same delivery won the race."""

    code = "conflict"

    def __init__(self, delivery_id: UUID | None, message: str | None = None) -> None:
        self.delivery_id = delivery_id
        super().__init__(
            message
            or f"Delivery {delivery_id} was modified concurrently; reload and retry"
        )


class DeliveryNotFoundError(WorkflowError):
    """Raised when a delivery is not found."""

    code = "not_found"

    def __init__(self, delivery_id: UUID) -> None:
        self.delivery_id = delivery_id
        super().__init__(f"Delivery {delivery_id} not found")


class RequestNotFoundError(WorkflowError):
    """Raised when the owning aid request is not found."""

    code = "not_found"

    def __init__(self, request_id: UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id} not found")
