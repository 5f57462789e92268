"""Duty segregation guard for delivery workflow actions.

This module decides whether an actor may perform a workflow action on a
delivery. It is a pure predicate layer: no I/O, no session.

Two kinds of rule are evaluated:
- Capability rules: the actor must hold the capability the action needs.
  ADMIN widens an actor to every capability.
- Identity rules: no natural person may act on two segregated steps of the
  same delivery. ADMIN does not waive these; privilege widens capability,
  never identity. Only cancel, a corrective action, has no identity rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from aidchain.db.models.base import Capability
from aidchain.services.errors import ForbiddenError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from aidchain.db.models.deliveries import Delivery

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Actions and rules
# ---------------------------------------------------------------------------


class WorkflowAction(str, Enum):
    """Named actions an actor may invoke on a delivery."""

    CREATE = "create"
    AUTHORIZE = "authorize"
    RECEIVE_IN_WAREHOUSE = "receive_in_warehouse"
    START_PREPARATION = "start_preparation"
    MARK_READY = "mark_ready"
    CONFIRM_DELIVERY = "confirm_delivery"
    CANCEL = "cancel"


class SegregationRule(str, Enum):
    """Rules the guard can fail on, surfaced to the rejected actor."""

    MISSING_CAPABILITY = "missing_capability"
    INACTIVE_ACTOR = "inactive_actor"
    CREATOR_CANNOT_AUTHORIZE = "creator_cannot_authorize"
    AUTHORIZER_CANNOT_HANDLE_STOCK = "authorizer_cannot_handle_stock"
    AUTHORIZER_CANNOT_DISPATCH = "authorizer_cannot_dispatch"
    PREPARER_CANNOT_DISPATCH = "preparer_cannot_dispatch"


# Capabilities accepted for each action (any one suffices)
ACTION_CAPABILITIES: dict[WorkflowAction, frozenset[Capability]] = {
    WorkflowAction.CREATE: frozenset({Capability.WAREHOUSE, Capability.AUTHORIZER}),
    WorkflowAction.AUTHORIZE: frozenset({Capability.AUTHORIZER}),
    WorkflowAction.RECEIVE_IN_WAREHOUSE: frozenset({Capability.WAREHOUSE}),
    WorkflowAction.START_PREPARATION: frozenset({Capability.WAREHOUSE}),
    WorkflowAction.MARK_READY: frozenset({Capability.WAREHOUSE}),
    WorkflowAction.CONFIRM_DELIVERY: frozenset({Capability.DISPATCHER}),
    WorkflowAction.CANCEL: frozenset({Capability.ADMIN}),
}

# Role strings issued by the identity provider, including the legacy
# Spanish labels, mapped onto the closed capability set.
ROLE_ALIASES: dict[str, Capability] = {
    "admin": Capability.ADMIN,
    "administrator": Capability.ADMIN,
    "authorizer": Capability.AUTHORIZER,
    "autorizador": Capability.AUTHORIZER,
    "warehouse": Capability.WAREHOUSE,
    "bodega": Capability.WAREHOUSE,
    "dispatcher": Capability.DISPATCHER,
    "despachador": Capability.DISPATCHER,
}


def parse_capabilities(role_names: Iterable[str]) -> frozenset[Capability]:
    """Translate identity-provider role names into capabilities.

    Matching is exact after trimming and lowercasing. Unknown names are
    dropped with a warning rather than guessed at.

    Args:
        role_names: Role strings as issued by the identity provider.

    Returns:
        The capabilities the names denote.
    """
    capabilities: set[Capability] = set()
    for name in role_names:
        key = name.strip().lower()
        if not key:
            continue
        capability = ROLE_ALIASES.get(key)
        if capability is None:
            logger.warning("Ignoring unknown role name", extra={"role": key})
            continue
        capabilities.add(capability)
    return frozenset(capabilities)


# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """The acting user, as supplied by the identity provider.

    Attributes:
        actor_id: Stable id of the natural person.
        capabilities: Capabilities the person holds.
        is_active: Inactive accounts may not act at all.
        display_name: Optional name for logs and notifications.
    """

    actor_id: UUID
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    is_active: bool = True
    display_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return Capability.ADMIN in self.capabilities

    def has_capability(self, capability: Capability) -> bool:
        """Check a capability; ADMIN holds every capability."""
        return capability in self.capabilities or self.is_admin

    @classmethod
    def from_roles(cls, actor_id: UUID, role_names: Iterable[str], **kwargs) -> Actor:
        """Build an actor from identity-provider role names."""
        return cls(actor_id=actor_id, capabilities=parse_capabilities(role_names), **kwargs)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GuardDecision:
    """Outcome of a guard evaluation.

    Attributes:
        allowed: Whether the actor may perform the action.
        rule: Rule that failed (None when allowed).
        reason: Human-readable explanation of the failure.
    """

    allowed: bool
    rule: SegregationRule | None = None
    reason: str | None = None

    @classmethod
    def allow(cls) -> GuardDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, rule: SegregationRule, reason: str) -> GuardDecision:
        return cls(allowed=False, rule=rule, reason=reason)


def may_perform(
    action: WorkflowAction,
    delivery: Delivery | None,
    actor: Actor,
) -> GuardDecision:
    """Decide whether an actor may perform an action on a delivery.

    The source status is not checked here; that is the engine's job.

    Args:
        action: Action requested.
        delivery: Target delivery. None only for CREATE.
        actor: Acting user.

    Returns:
        GuardDecision, allowed or carrying the failed rule.
    """
    if not actor.is_active:
        return GuardDecision.deny(SegregationRule.INACTIVE_ACTOR, "Account is inactive")

    required = ACTION_CAPABILITIES[action]
    if not any(actor.has_capability(capability) for capability in required):
        names = " or ".join(sorted(capability.value for capability in required))
        return GuardDecision.deny(
            SegregationRule.MISSING_CAPABILITY,
            f"Action {action.value} requires the {names} capability",
        )

    if delivery is None:
        return GuardDecision.allow()

    actor_id = actor.actor_id

    if action == WorkflowAction.AUTHORIZE and actor_id == delivery.created_by:
        return GuardDecision.deny(
            SegregationRule.CREATOR_CANNOT_AUTHORIZE,
            "The creator of a delivery cannot authorize it",
        )

    if (
        action in (WorkflowAction.RECEIVE_IN_WAREHOUSE, WorkflowAction.START_PREPARATION)
        and actor_id == delivery.authorized_by
    ):
        return GuardDecision.deny(
            SegregationRule.AUTHORIZER_CANNOT_HANDLE_STOCK,
            "The authorizer of a delivery cannot receive or prepare it",
        )

    if action == WorkflowAction.CONFIRM_DELIVERY:
        if actor_id == delivery.authorized_by:
            return GuardDecision.deny(
                SegregationRule.AUTHORIZER_CANNOT_DISPATCH,
                "The authorizer of a delivery cannot hand it to the beneficiary",
            )
        if actor_id == delivery.prepared_by:
            return GuardDecision.deny(
                SegregationRule.PREPARER_CANNOT_DISPATCH,
                "The preparer of a delivery cannot hand it to the beneficiary",
            )

    return GuardDecision.allow()


class DutySegregationGuard:
    """Raising wrapper around may_perform used by the workflow engine."""

    def check(
        self,
        action: WorkflowAction,
        delivery: Delivery | None,
        actor: Actor,
    ) -> GuardDecision:
        return may_perform(action, delivery, actor)

    def require(
        self,
        action: WorkflowAction,
        delivery: Delivery | None,
        actor: Actor,
    ) -> None:
        """Require the actor to pass the guard.

        Raises:
            ForbiddenError: With the failed rule, if the guard denies.
        """
        decision = self.check(action, delivery, actor)
        if decision.allowed:
            return

        logger.warning(
            "Segregation guard denied action",
            extra={
                "action": action.value,
                "rule": decision.rule.value,
                "actor_id": str(actor.actor_id),
                "delivery_id": str(delivery.delivery_id) if delivery is not None else None,
            },
        )
        raise ForbiddenError(action, decision.rule, decision.reason)
