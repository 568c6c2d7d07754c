from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict

import redis

_log = logging.getLogger("staybook.events")

DOMAIN = "bookings"


class EventPublisher:
    """
    Publishes booking domain events for the messaging collaborator.

    With ``EVENTS_ENABLED=true`` payloads go to Redis Pub/Sub on
    ``events:<domain>``; otherwise, or when Redis is unreachable, the event
    is written to the log instead.
    """

    def __init__(self, url: str | None = None, enabled: bool | None = None) -> None:
        self._url = url or os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        if enabled is None:
            enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except (redis.RedisError, ValueError) as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def publish(self, domain: str, event_type: str, payload: Dict[str, Any]) -> None:
        data = {
            "domain": domain,
            "type": event_type,
            "ts_ms": int(time.time() * 1000),
            "payload": payload,
        }
        if self._enabled and self._client is not None:
            try:
                self._client.publish(f"events:{domain}", json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("events: redis publish failed: %s", e)
        _log.info("event", extra={"event": data})


_publisher: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher


def emit_event(event_type: str, payload: Dict[str, Any], publisher: EventPublisher | None = None) -> None:
    """Best-effort: a failed emission never fails the booking operation."""
    try:
        (publisher or get_publisher()).publish(DOMAIN, event_type, payload)
    except Exception:
        _log.exception("events: dropping %s", event_type)
