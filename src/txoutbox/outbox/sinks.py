"""
Event Sinks

Concrete EventSink implementations the relay can deliver to.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import httpx

from ..errors import DeliveryError
from ..observability import inject_trace_context
from .models import OutboxEvent

logger = logging.getLogger(__name__)


class InMemoryEventSink:
    """
    Collects delivered events in a list.

    Useful for tests and local development. ``fail_times`` makes the
    next N publishes raise, ``delay`` slows every publish down.
    """

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.events: List[OutboxEvent] = []
        self.attempts = 0
        self.fail_times = fail_times
        self.delay = delay

    async def publish(self, event: OutboxEvent) -> bool:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError(f"Injected failure for {event.event_type}")
        self.events.append(event)
        return True

    @property
    def event_ids(self) -> List[str]:
        return [e.event_id for e in self.events]


class LoggingEventSink:
    """Logs each event. Stand-in when no broker is configured."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def publish(self, event: OutboxEvent) -> bool:
        logger.log(
            self.level,
            f"Event {event.event_type} for {event.aggregate_type}/{event.aggregate_id} "
            f"(event_id={event.event_id})"
        )
        return True


class HttpEventSink:
    """
    POSTs each event as JSON to a webhook.

    The event_id is sent as the Idempotency-Key header so receivers can
    drop redeliveries. Any non-2xx response is a delivery failure.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None
    ):
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def publish(self, event: OutboxEvent) -> bool:
        headers = {
            **self.headers,
            "Content-Type": "application/json",
            "Idempotency-Key": event.event_id,
            "X-Event-Type": event.event_type,
        }
        inject_trace_context(headers)

        client = await self._get_client()
        try:
            response = await client.post(self.url, json=event.to_message(), headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Webhook timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if not response.is_success:
            raise DeliveryError(
                f"Webhook returned {response.status_code}: {response.text[:200]}"
            )
        return True

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
