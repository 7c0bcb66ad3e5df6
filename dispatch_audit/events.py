from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from dispatch_audit.config import Settings

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver a UI refresh event. Delivery is best-effort."""


class NullPublisher:
    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        _ = (event_name, payload)


class WebhookPublisher:
    def __init__(self, url: str, *, timeout_seconds: float = 2.0, session: Any | None = None) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            response = self._session.post(
                self._url,
                json={"event": event_name, "payload": payload},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Event %s not delivered: %s", event_name, exc)
            return
        if response.status_code >= 400:
            logger.warning(
                "Event %s rejected by webhook with status %s: %s",
                event_name,
                response.status_code,
                response.text[:300],
            )


def publisher_from_settings(settings: Settings) -> EventPublisher:
    if settings.event_backend == "webhook":
        if settings.event_webhook_url is None:
            raise ValueError("EVENT_WEBHOOK_URL is required when EVENT_BACKEND=webhook")
        return WebhookPublisher(settings.event_webhook_url, timeout_seconds=settings.event_timeout_seconds)
    return NullPublisher()


def publish_safely(publisher: EventPublisher, event_name: str, payload: dict[str, Any]) -> None:
    """Publish after commit; a failing publisher never fails the caller."""
    try:
        publisher.publish(event_name, payload)
    except Exception:  # noqa: BLE001
        logger.exception("Event publisher failed for %s", event_name)
