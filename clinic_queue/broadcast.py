"""Live queue updates for the dashboard and the public queue view.

The core only knows the ``Publisher`` interface.  ``RedisPublisher`` pushes
onto the ``clinic:updates`` channel that the SSE endpoint relays;
``InMemoryPublisher`` is an in-process event bus.  ``Broadcaster`` fans an
event out to every publisher and never lets a delivery failure reach the
state transition that triggered it.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis
from sqlmodel import Session

from . import config, store
from .eta import per_patient_minutes
from .models import ClinicSettings, Token

logger = logging.getLogger(__name__)

NEW_BOOKING = "new_booking"
TOKEN_UPDATE = "token_update"
PATIENT_CANCELLED = "patient_cancelled"
QUEUE_UPDATE = "queue_update"
SESSION_UPDATE = "session_update"
EMERGENCY_LEAVE = "emergency_leave"


class Publisher(Protocol):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class RedisPublisher:
    """Publish events to a Redis channel and cache the latest queue snapshot."""

    def __init__(self, client: redis.Redis, channel: str = config.UPDATES_CHANNEL, cache_ttl: int = 30) -> None:
        self.client = client
        self.channel = channel
        self.cache_ttl = cache_ttl

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps(
            {"type": event, "data": payload, "timestamp": datetime.now().isoformat()},
            default=str,
        )
        self.client.publish(self.channel, message)
        if event == QUEUE_UPDATE:
            self.client.setex(config.QUEUE_CACHE_KEY, self.cache_ttl, json.dumps(payload, default=str))


class InMemoryPublisher:
    """In-process event bus.  Subscribers are called with ``(event, payload)``."""

    def __init__(self, history: int = 100) -> None:
        self._subscribers: List[Callable[[str, Dict[str, Any]], None]] = []
        self._lock = threading.Lock()
        self.history: List[Dict[str, Any]] = []
        self.max_history = history

    def subscribe(self, callback: Callable[[str, Dict[str, Any]], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.history.append({"type": event, "data": payload})
            del self.history[:-self.max_history]
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Subscriber failed on %s", event)

    def events(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self.history if event is None or e["type"] == event]


def serial_executor() -> ThreadPoolExecutor:
    """A single delivery thread, so events reach publishers in publish order."""
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="broadcast")


class Broadcaster:
    def __init__(self, publishers: Optional[List[Publisher]] = None, executor: Optional[Executor] = None) -> None:
        self.publishers: List[Publisher] = list(publishers or [])
        self.executor = executor

    def add(self, publisher: Publisher) -> None:
        self.publishers.append(publisher)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        """Fire and forget.  Runs on the executor when one is configured."""
        if self.executor is not None:
            try:
                self.executor.submit(self._deliver, event, payload)
                return
            except RuntimeError as e:
                # executor shut down; deliver inline instead of dropping
                logger.warning("Broadcast executor unavailable: %s", e)
        self._deliver(event, payload)

    def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        for publisher in self.publishers:
            try:
                publisher.publish(event, payload)
            except Exception as e:
                logger.warning("Broadcast %s via %s failed: %s", event, type(publisher).__name__, e)


def token_summary(token: Token) -> Dict[str, Any]:
    return {
        "id": token.id,
        "tokenNumber": token.token_number,
        "patientName": token.patient_name,
        "status": getattr(token.status, "value", token.status),
        "estimatedTime": token.estimated_time,
    }


def token_payload(token: Token) -> Dict[str, Any]:
    return token.model_dump(mode="json")


def build_snapshot(
    db: Session,
    day: date,
    settings: ClinicSettings,
    delay_minutes: int = 0,
) -> Dict[str, Any]:
    """Current token, next waiting tokens and an aggregate wait estimate for ``day``."""
    current = store.current_serving(db, day)
    upcoming = store.waiting_tokens(db, day, limit=settings.upcoming_limit)
    counts = store.count_by_status(db, day)
    per_patient = per_patient_minutes(db, day, settings)

    low = round(counts["waiting"] * per_patient + delay_minutes)
    high = round(low + per_patient)
    return {
        "date": day.isoformat(),
        "currentToken": token_summary(current) if current else None,
        "upcomingTokens": [token_summary(t) for t in upcoming],
        "estimatedWaitRange": f"{low}-{high} minutes",
        "delayMinutes": delay_minutes,
        "stats": {
            "waiting": counts["waiting"],
            "called": counts["called"],
            "served": counts["served"],
            "skipped": counts["skipped"],
            "cancelled": counts["cancelled"],
            "total": sum(counts.values()),
        },
    }
