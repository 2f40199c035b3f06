# app/infra/event_publisher.py
"""
Outbound dispatch events (OfferCreated, IncidentEscalated, VendorTimeout, ...).

Two layers:
- a *sink* delivers one serialized event somewhere (webhook, log)
- a *publisher* implements the dispatch ``EventPublisher`` port

In production the ``QueuedEventPublisher`` writes a ``publish_event`` job
so delivery survives restarts and is retried with the job queue backoff;
the job handler hands the payload to the configured sink.

Usage:
    sink = get_event_sink()
    await sink.deliver(event.to_dict())
"""
from __future__ import annotations

import abc
import asyncio
from typing import Any

import aiohttp

from app.config import settings
from app.core.dispatch.domain import DispatchEvent
from app.core.errors import UpstreamError
from app.infra.http_client import get_events_session
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)

PUBLISH_EVENT_JOB = "publish_event"


class EventSink(abc.ABC):
    """Abstract destination for serialized dispatch events"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Sink name for logging/metrics"""

    @abc.abstractmethod
    async def deliver(self, event: dict[str, Any]) -> None:
        """Deliver one event.  Raises on failure so the caller can retry."""

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if sink is properly configured"""


class WebhookEventSink(EventSink):
    """POSTs each event as JSON to a single webhook URL."""

    def __init__(self, url: str | None):
        self._url = url

    @property
    def name(self) -> str:
        return "webhook"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def deliver(self, event: dict[str, Any]) -> None:
        if not self._url:
            raise UpstreamError("Event webhook URL is not configured")

        headers = {"X-Event-Type": event.get("event_type", "")}
        try:
            session = get_events_session()
            async with session.post(self._url, json=event, headers=headers) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    inc_counter("events_delivered_total", sink=self.name, status="error")
                    raise UpstreamError(f"Event webhook returned {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            inc_counter("events_delivered_total", sink=self.name, status="error")
            raise UpstreamError(f"Event webhook failed: {exc.__class__.__name__}: {exc}") from exc

        inc_counter("events_delivered_total", sink=self.name, status="ok")
        logger.debug(
            f"Event delivered: {event.get('event_type')}",
            extra={"incident_id": event.get("incident_id")},
        )


class LogEventSink(EventSink):
    """Writes events to the application log (dev / no webhook configured)."""

    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def deliver(self, event: dict[str, Any]) -> None:
        inc_counter("events_delivered_total", sink=self.name, status="ok")
        logger.info(
            f"EVENT {event.get('event_type')}: {event.get('data')}",
            extra={"incident_id": event.get("incident_id")},
        )


def get_event_sink() -> EventSink:
    """Webhook sink when ``event_webhook_url`` is set, otherwise the log sink."""
    webhook = WebhookEventSink(settings.event_webhook_url)
    if webhook.is_configured():
        return webhook
    return LogEventSink()


class QueuedEventPublisher:
    """Durable publisher: one ``publish_event`` job per event."""

    def __init__(self, repo: AsyncPostgresJobRepository, *, max_attempts: int = 5):
        self._repo = repo
        self._max_attempts = max_attempts

    async def publish(self, event: DispatchEvent) -> None:
        await self._repo.enqueue(
            PUBLISH_EVENT_JOB,
            event.to_dict(),
            max_attempts=self._max_attempts,
        )
        inc_counter("events_published_total", event_type=event.event_type.value)


class DirectEventPublisher:
    """Delivers immediately through a sink; failures are logged, not retried."""

    def __init__(self, sink: EventSink):
        self._sink = sink

    async def publish(self, event: DispatchEvent) -> None:
        inc_counter("events_published_total", event_type=event.event_type.value)
        try:
            await self._sink.deliver(event.to_dict())
        except UpstreamError as exc:
            logger.error(
                f"Event {event.event_type.value} not delivered via {self._sink.name}: {exc.detail}",
                extra={"incident_id": event.incident_id},
            )
