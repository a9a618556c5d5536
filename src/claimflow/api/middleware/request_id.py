"""X-Request-Id correlation for the Claimflow API.

A caller-supplied id is kept when it is a short token of safe characters, so
it can be echoed into headers and logs verbatim. Anything else is replaced by
a fresh uuid4. The id is exposed on request.state and, for code that has no
Request at hand, through get_request_id().
"""

import re
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-Id"

_ACCEPTED_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_current_request_id: ContextVar[str | None] = ContextVar("claimflow_request_id", default=None)


def get_request_id() -> str | None:
    """Id of the request being served in this context, if any."""
    return _current_request_id.get()


def resolve_request_id(incoming: str | None) -> str:
    if incoming is not None:
        candidate = incoming.strip()
        if _ACCEPTED_REQUEST_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each request and echo it back."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = _current_request_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _current_request_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
