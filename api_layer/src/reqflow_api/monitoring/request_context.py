"""Request context middleware for logging."""
import time
import uuid
from contextvars import ContextVar
from typing import Any
from typing import Callable

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables to store request-specific data
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
actor_id_ctx: ContextVar[str] = ContextVar("actor_id", default="")
client_ip_ctx: ContextVar[str] = ContextVar("client_ip", default="")
request_path_ctx: ContextVar[str] = ContextVar("request_path", default="")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to capture and log request context information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        """
        Capture request context and add to logging.

        Captures:
        - Request ID (from X-Request-ID header or generated)
        - Acting user (from X-Actor-Id header)
        - Client IP (first X-Forwarded-For hop or direct peer)
        - Request path and method
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(request_id)

        actor_id = request.headers.get("X-Actor-Id", "anonymous")
        actor_id_ctx.set(actor_id)

        client_ip = self._get_client_ip(request)
        client_ip_ctx.set(client_ip)

        request_path = f"{request.method} {request.url.path}"
        request_path_ctx.set(request_path)

        with logger.contextualize(
            request_id=request_id,
            actor_id=actor_id,
            client_ip=client_ip,
            request_path=request_path,
        ):
            start_time = time.time()
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            logger.info(
                f"{request.method} {request.url.path} - {response.status_code}",
                event_type="http_request",
                http_method=request.method,
                url_path=str(request.url.path),
                url_query=str(request.query_params) if request.query_params else None,
                status_code=response.status_code,
                response_time_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

    def _get_client_ip(self, request: Request) -> str:
        """Get real client IP address, honoring X-Forwarded-For."""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first one
            return forwarded_for.split(",")[0].strip()

        if request.client:
            return request.client.host

        return "unknown"


def get_request_context() -> dict:
    """
    Get current request context for logging.

    Returns:
        Dictionary with request context variables
    """
    return {
        "request_id": request_id_ctx.get(),
        "actor_id": actor_id_ctx.get(),
        "client_ip": client_ip_ctx.get(),
        "request_path": request_path_ctx.get(),
    }
