"""Actor identity middleware and dependencies.

Identity and roles are owned by an upstream gateway. This module accepts
the gateway's headers as the acting user:
- ActorHeaderMiddleware: reads the actor id and role headers and sets the
  actor in request context
- require_actor dependency: FastAPI dependency for routes that act on
  deliveries

Role strings are translated into capabilities once, here at the boundary.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from aidchain.services.segregation import Actor

if TYPE_CHECKING:
    from collections.abc import Callable

    from starlette.responses import Response

    from aidchain.core.config import AuthSettings

logger = logging.getLogger(__name__)

_INACTIVE_VALUES = frozenset({"false", "0", "no", "off"})

current_actor_ctx: ContextVar[Actor | None] = ContextVar("current_actor", default=None)


def get_current_actor() -> Actor | None:
    """Get the current actor from context, if any."""
    return current_actor_ctx.get()


def set_current_actor(actor: Actor | None) -> None:
    """Set the current actor in context."""
    current_actor_ctx.set(actor)


def actor_from_headers(
    actor_id: str | None,
    roles: str | None,
    active: str | None = None,
) -> Actor | None:
    """Build an actor from raw gateway header values.

    Args:
        actor_id: Value of the actor id header.
        roles: Comma-separated role names.
        active: Account status. Absent means active; "false", "0", "no" or
            "off" mark a disabled account, which the segregation guard refuses.

    Returns:
        The actor, or None if the id is missing or not a UUID.
    """
    if not actor_id:
        return None
    try:
        parsed_id = uuid.UUID(actor_id.strip())
    except ValueError:
        logger.warning("Rejected malformed actor id header", extra={"actor_id": actor_id})
        return None
    role_names = roles.split(",") if roles else []
    is_active = (active or "").strip().lower() not in _INACTIVE_VALUES
    return Actor.from_roles(parsed_id, role_names, is_active=is_active)


class ActorHeaderMiddleware(BaseHTTPMiddleware):
    """Middleware that sets the acting user from trusted gateway headers.

    The middleware does NOT block anonymous requests; that is handled by
    route-level dependencies so health checks keep working.
    """

    def __init__(self, app: Any, *, settings: AuthSettings) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application.
            settings: Header names to read.
        """
        super().__init__(app)
        self._id_header = settings.actor_id_header
        self._roles_header = settings.actor_roles_header
        self._active_header = settings.actor_active_header

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        """Read actor headers and store the actor for the request.

        Args:
            request: The incoming HTTP request.
            call_next: The next middleware/handler in the chain.

        Returns:
            The response from the handler.
        """
        set_current_actor(None)

        actor = actor_from_headers(
            request.headers.get(self._id_header),
            request.headers.get(self._roles_header),
            request.headers.get(self._active_header),
        )
        if actor is not None:
            set_current_actor(actor)
            request.state.actor = actor

        return await call_next(request)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


async def require_actor(request: Request) -> Actor:
    """Dependency that requires an identified actor.

    Raises:
        HTTPException: 401 if no actor was identified.
    """
    actor = get_current_actor()
    if actor is None:
        actor = getattr(request.state, "actor", None)

    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Actor identity required",
        )

    return actor


CurrentActor = Annotated[Actor, Depends(require_actor)]
