"""SQLAlchemy ORM models for aidchain.

This package contains all database models organized by domain:
- base: Common metadata, annotated types and enums
- deliveries: Delivery aggregate and its line items
- audit: Append-only delivery history
- requests: Aid requests and their requested items
- inventory: Products, kits, stock lots and stock movements
- notifications: Work-item outbox
"""

from aidchain.db.models.audit import DeliveryHistory
from aidchain.db.models.base import (
    Base,
    Capability,
    DeliveryStatus,
    MovementType,
    RequestStatus,
    metadata,
)
from aidchain.db.models.deliveries import Delivery, DeliveryDetail
from aidchain.db.models.inventory import Kit, KitComponent, Product, ProductLot, StockMovement
from aidchain.db.models.notifications import WorkItemEvent
from aidchain.db.models.requests import AidRequest, RequestHistory, RequestItem

__all__ = [
    "AidRequest",
    "Base",
    "Capability",
    "Delivery",
    "DeliveryDetail",
    "DeliveryHistory",
    "DeliveryStatus",
    "Kit",
    "KitComponent",
    "MovementType",
    "Product",
    "ProductLot",
    "RequestHistory",
    "RequestItem",
    "RequestStatus",
    "StockMovement",
    "WorkItemEvent",
    "metadata",
]
