"""aidchain API middleware components.

This module provides middleware for:
- Request ID tracking for request correlation
- Consistent error response formatting
- Actor identity from trusted gateway headers
"""

from aidchain.api.middleware.auth import (
    ActorHeaderMiddleware,
    CurrentActor,
    get_current_actor,
    require_actor,
    set_current_actor,
)
from aidchain.api.middleware.errors import ErrorHandlerMiddleware
from aidchain.api.middleware.request_id import RequestIDMiddleware

__all__ = [
    "ActorHeaderMiddleware",
    "CurrentActor",
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
    "get_current_actor",
    "require_actor",
    "set_current_actor",
]
