"""aidchain service layer.

This package contains the delivery workflow core:
- DutySegregationGuard: capability and identity rules per action
- DeliveryAuditLog: append-only, hash-chained delivery history
- StockLedger / InventoryCoordinator: lot deduction and reversal
- FulfillmentTracker: requested vs delivered quantities per request
- NotificationRouter: next responsible role and the work-item outbox
- DeliveryWorkflowEngine: the state machine tying them together
"""

from aidchain.services.audit_log import (
    DeliveryAuditLog,
    HistoryEntry,
    HistoryVerificationResult,
)
from aidchain.services.errors import (
    ConflictError,
    DeliveryNotFoundError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    RequestNotFoundError,
    WorkflowError,
    WorkflowValidationError,
)
from aidchain.services.fulfillment import FulfillmentTracker
from aidchain.services.inventory import Allocation, InventoryCoordinator
from aidchain.services.notifications import (
    NotificationRouter,
    PendingWork,
    next_responsible_role,
)
from aidchain.services.segregation import (
    Actor,
    DutySegregationGuard,
    GuardDecision,
    SegregationRule,
    WorkflowAction,
    may_perform,
)
from aidchain.services.stock_ledger import StockLedger
from aidchain.services.workflow import (
    DeliveryLine,
    DeliveryWorkflowEngine,
    TransitionResult,
)

__all__ = [
    "Actor",
    "Allocation",
    "ConflictError",
    "DeliveryAuditLog",
    "DeliveryLine",
    "DeliveryNotFoundError",
    "DeliveryWorkflowEngine",
    "DutySegregationGuard",
    "ForbiddenError",
    "FulfillmentTracker",
    "GuardDecision",
    "HistoryEntry",
    "HistoryVerificationResult",
    "InsufficientStockError",
    "InvalidTransitionError",
    "InventoryCoordinator",
    "NotificationRouter",
    "PendingWork",
    "RequestNotFoundError",
    "SegregationRule",
    "StockLedger",
    "TransitionResult",
    "WorkflowAction",
    "WorkflowError",
    "WorkflowValidationError",
    "may_perform",
    "next_responsible_role",
]
