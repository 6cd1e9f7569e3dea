"""
RBAC Middleware - Request context for authorization logging.

Binds the request id (``X-Request-ID`` header, generated when absent) and the
authenticated user id to the logging ContextVars so every permission decision
logged during the request carries them. Must run after the authentication
middleware that sets ``request.state.user_id``.
"""

import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.logging_config import request_id_var, user_id_var

REQUEST_ID_HEADER = "X-Request-ID"


class RBACMiddleware(BaseHTTPMiddleware):
    """Attach request/user ids to log records for the duration of a request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:12]}"
        user_id = getattr(request.state, "user_id", None)

        request_token = request_id_var.set(request_id)
        user_token = user_id_var.set(str(user_id) if user_id else None)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(request_token)
            user_id_var.reset(user_token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
