"""
Event Dispatch

Fire-and-forget delivery of domain events. Delivery failures are logged and
never propagate to the operation that produced the event.
"""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx
from loguru import logger

from reqflow_api.workflow.collaborators import EventDispatcher
from reqflow_api.workflow.enums import DomainEvent
from reqflow_api.workflow.models.system_settings import SystemSettings


class LoggingEventDispatcher:
    """Writes each event to the application log."""

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Domain event: {event_name}", event_name=event_name, event_payload=payload)


class WebhookEventDispatcher:
    """POSTs events as JSON to a configured URL."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        body = {
            "event": event_name,
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
        }
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=body)
        response.raise_for_status()


class CompositeEventDispatcher:
    """Fans an event out to several dispatchers; one failing does not stop the rest."""

    def __init__(self, dispatchers: List[EventDispatcher]):
        self.dispatchers = list(dispatchers)

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        for dispatcher in self.dispatchers:
            await safe_dispatch(dispatcher, event_name, payload)


async def safe_dispatch(dispatcher: Optional[EventDispatcher], event_name: str, payload: Dict[str, Any]) -> bool:
    """
    Deliver an event, swallowing and logging any failure.

    Returns:
        True if delivered, False if the dispatcher raised
    """
    if dispatcher is None:
        return False
    try:
        await dispatcher.dispatch(event_name, payload)
    except Exception as e:  # pylint: disable=broad-except
        logger.warning(
            f"Event dispatch failed for {event_name}: {type(e).__name__}: {e}",
            event_name=event_name,
            dispatcher=type(dispatcher).__name__,
            event_request_id=payload.get("request_id"),
        )
        return False
    return True


async def emit_event(
    dispatcher: Optional[EventDispatcher], settings: SystemSettings, event: DomainEvent, payload: Dict[str, Any]
) -> bool:
    """Dispatch a domain event unless notifications are disabled in system settings."""
    if not settings.notifications_enabled:
        logger.debug(f"Notifications disabled, skipping {event.value}", event_name=event.value)
        return False
    return await safe_dispatch(dispatcher, event.value, payload)
