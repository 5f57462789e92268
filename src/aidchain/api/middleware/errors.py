"""Error handling middleware for consistent JSON error responses.

Every error leaves the API with the same structure:
- error: Machine-readable error code
- message: Human-readable description
- detail: Optional structured information (failed rule, field, stock figures)
- request_id: Correlation ID for debugging

Workflow failures are mapped to HTTP statuses here so routes can let them
propagate unchanged.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from aidchain.api.middleware.request_id import get_request_id
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

logger = logging.getLogger(__name__)

# HTTP status per workflow failure; subclasses not listed fall back to 400
WORKFLOW_ERROR_STATUS: dict[type[WorkflowError], int] = {
    InvalidTransitionError: 409,
    ForbiddenError: 403,
    WorkflowValidationError: 400,
    InsufficientStockError: 409,
    ConflictError: 409,
    DeliveryNotFoundError: 404,
    RequestNotFoundError: 404,
}


def status_for_workflow_error(exc: WorkflowError) -> int:
    """Resolve the HTTP status of a workflow failure by its class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in WORKFLOW_ERROR_STATUS:
            return WORKFLOW_ERROR_STATUS[cls]
    return 400


def workflow_error_detail(exc: WorkflowError) -> dict[str, Any] | None:
    """Structured detail surfaced to the caller for a workflow failure."""
    if isinstance(exc, ForbiddenError):
        return {"action": exc.action.value, "rule": exc.rule.value}
    if isinstance(exc, InvalidTransitionError):
        return {"action": exc.action.value, "current_status": exc.current_status.value}
    if isinstance(exc, WorkflowValidationError):
        return {"field": exc.field} if exc.field else None
    if isinstance(exc, InsufficientStockError):
        return {
            "product_id": str(exc.product_id),
            "lot_id": str(exc.lot_id) if exc.lot_id else None,
            "requested": exc.requested,
            "available": exc.available,
        }
    if isinstance(exc, ConflictError):
        return {"delivery_id": str(exc.delivery_id)} if exc.delivery_id else None
    if isinstance(exc, DeliveryNotFoundError):
        return {"delivery_id": str(exc.delivery_id)}
    if isinstance(exc, RequestNotFoundError):
        return {"request_id": str(exc.request_id)}
    return None


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error: Machine-readable error code.
        message: Human-readable description.
        status_code: HTTP status code.
        detail: Optional additional details.

    Returns:
        JSONResponse with consistent error structure.
    """
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that catches exceptions and returns consistent JSON errors.

    Handles:
    - WorkflowError and subclasses: typed workflow failures
    - HTTPException: FastAPI's built-in HTTP errors
    - ValidationError: Pydantic validation failures
    - Generic exceptions: Unexpected errors (logged, returns 500)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        """Process request and handle any exceptions.

        Args:
            request: The incoming HTTP request.
            call_next: The next middleware/handler in the chain.

        Returns:
            The response, or an error response if an exception occurred.
        """
        try:
            return await call_next(request)
        except WorkflowError as exc:
            return build_error_response(
                error=exc.code,
                message=exc.message,
                status_code=status_for_workflow_error(exc),
                detail=workflow_error_detail(exc),
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors()},
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
