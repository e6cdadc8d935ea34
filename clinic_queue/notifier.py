"""Notification requests for patients.

The core does not talk to SMS or WhatsApp itself.  It hands a small request
``{tokenId, messageKind, ...}`` to Redis for ``whatsapp_worker.py`` to
deliver.  Failures are logged and swallowed; they never fail the state
transition that produced them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

from . import config
from .models import Token

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = "booking_confirmed"
CALLED = "called"
SERVED = "served"
CANCELLED = "cancelled"
DELAY = "delay"
LEAVE = "leave"
EMERGENCY_LEAVE = "emergency_leave"

KINDS = (BOOKING_CONFIRMED, CALLED, SERVED, CANCELLED, DELAY, LEAVE, EMERGENCY_LEAVE)
# Notices the doctor may send to one patient on demand
OPERATOR_KINDS = (CALLED, DELAY, SERVED, CANCELLED)


def build_request(token: Token, kind: str, **context: Any) -> Dict[str, Any]:
    if kind not in KINDS:
        raise ValueError(f"Unknown notification kind: {kind}")
    return {
        "tokenId": token.id,
        "messageKind": kind,
        "tokenNumber": token.token_number,
        "bookingDate": token.booking_date.isoformat(),
        "phone": token.patient_phone,
        "channels": token.channels,
        "context": context,
        "timestamp": datetime.now().isoformat(),
    }


class Notifier:
    def __init__(self, client: Optional[redis.Redis] = None, queue: str = config.NOTIFICATION_QUEUE) -> None:
        self.client = client
        self.queue = queue

    def request(self, token: Token, kind: str, **context: Any) -> Optional[Dict[str, Any]]:
        """Queue one notification.  Returns the request, or None when nothing was queued."""
        if not token.channels:
            return None
        try:
            data = build_request(token, kind, **context)
            if self.client is None:
                logger.info("Notification (no queue) token=%s kind=%s", token.id, kind)
            else:
                self.client.lpush(self.queue, json.dumps(data, default=str))
                logger.info("Queued %s notification for token %s", kind, token.id)
            return data
        except Exception as e:
            logger.warning("Failed to queue %s notification for token %s: %s", kind, token.id, e)
            return None

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Delivery log written by the worker, newest first."""
        if self.client is None:
            return []
        try:
            entries = self.client.lrange(config.NOTIFICATION_LOG, 0, max(limit, 1) - 1)
        except redis.RedisError as e:
            logger.warning("Failed to read notification history: %s", e)
            return []
        return [json.loads(raw) for raw in entries]
