"""Request correlation IDs.

Every request carries an X-Request-ID: the one sent by the identity gateway
when it is well formed, a fresh UUID otherwise. The ID is echoed on the
response and in error bodies so a rejected transition can be matched to the
server log lines it produced.
"""

import re
import uuid
from collections.abc import Callable
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

# Incoming IDs end up in logs and JSON bodies; anything else is replaced
_ACCEPTED_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    """Correlation ID of the request being served, or None outside a request."""
    return request_id_ctx.get()


def resolve_request_id(incoming: str | None) -> str:
    """Reuse a well-formed incoming ID, otherwise mint a new one."""
    if incoming and _ACCEPTED_REQUEST_ID.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags each request and its response with a correlation ID."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
