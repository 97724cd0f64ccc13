"""Monitoring package for logging, request context, and observability."""

from reqflow_api.monitoring.request_context import RequestContextMiddleware
from reqflow_api.monitoring.request_context import get_request_context

__all__ = [
    "RequestContextMiddleware",
    "get_request_context",
]
