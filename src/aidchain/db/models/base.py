"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable annotated column types
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures stable DDL names.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

# Reference to a user held by the external identity provider
OptionalActorRef = Annotated[
    uuid.UUID | None,
    mapped_column(UUID(as_uuid=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]


class Base(DeclarativeBase):
    """Declarative base for all aidchain models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class DeliveryStatus(enum.Enum):
    """Delivery lifecycle states.

    States:
        PENDING_AUTHORIZATION: Created, waiting for an authorizer
        AUTHORIZED: Approved for release from the warehouse
        RECEIVED_WAREHOUSE: Order received by warehouse staff
        IN_PREPARATION: Items being picked and packed
        READY: Packed; stock has been deducted
        DELIVERED: Handed to the beneficiary (terminal)
        CANCELLED: Abandoned by an administrator (terminal)
    """

    PENDING_AUTHORIZATION = "pending_authorization"
    AUTHORIZED = "authorized"
    RECEIVED_WAREHOUSE = "received_warehouse"
    IN_PREPARATION = "in_preparation"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class RequestStatus(enum.Enum):
    """Beneficiary request states owned by the request service.

    Values:
        REGISTERED: Request captured
        IN_REVIEW: Under review
        APPROVED: Approved, deliveries may be created
        REJECTED: Rejected
        DELIVERED: Every item fully delivered
        PARTIALLY_DELIVERED: Some quantity delivered, more cycles allowed
        CANCELLED: Withdrawn
    """

    REGISTERED = "registered"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELIVERED = "delivered"
    PARTIALLY_DELIVERED = "partially_delivered"
    CANCELLED = "cancelled"


class Capability(enum.Enum):
    """Role capabilities held by an actor.

    Values:
        AUTHORIZER: May authorize deliveries
        WAREHOUSE: May receive, prepare and pack deliveries
        DISPATCHER: May hand deliveries to beneficiaries
        ADMIN: Holds every capability above and may cancel
    """

    AUTHORIZER = "authorizer"
    WAREHOUSE = "warehouse"
    DISPATCHER = "dispatcher"
    ADMIN = "admin"


class MovementType(enum.Enum):
    """Stock movement kinds recorded against product lots.

    Values:
        ENTRY: Stock received into a lot
        EXIT: Stock leaving for a delivery
        ADJUSTMENT: Manual correction
        RETURN: Stock restored after a cancelled delivery
    """

    ENTRY = "entry"
    EXIT = "exit"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
