#!/usr/bin/env python3
"""
Patient Notification Worker

Pops notification requests queued by the app and delivers them over SMS
and/or WhatsApp via Twilio, following each patient's preferences.
Run this as a separate background process for production use.

Usage:
    python -m clinic_queue.whatsapp_worker

Environment Variables:
    REDIS_URL - Redis connection URL (required)
    TWILIO_ACCOUNT_SID - Your Twilio Account SID
    TWILIO_AUTH_TOKEN - Your Twilio Auth Token
    TWILIO_PHONE_NUMBER - Twilio SMS sender number
    TWILIO_WHATSAPP_NUMBER - Your Twilio WhatsApp number (e.g., whatsapp:+14155238886)
    COUNTRY_CODE - Prefix for the patients' 10-digit numbers (default +91)
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import redis
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from . import config

logger = logging.getLogger("clinic_queue.worker")

MESSAGES = {
    "booking_confirmed": (
        "Your token #{tokenNumber} is confirmed for {bookingDate}. "
        "Estimated time: {estimatedTime}. Wait ahead: {waitAhead} patients."
    ),
    "called": "Token #{tokenNumber}: Your turn is coming up. Please proceed to the doctor's chamber.",
    "served": "Token #{tokenNumber}: Thank you for visiting. Hope you feel better soon!",
    "cancelled": "Token #{tokenNumber}: Your appointment has been cancelled. Reason: {reason}.",
    "delay": (
        "Token #{tokenNumber}: Your appointment is delayed by {delayMinutes} minutes. "
        "New estimated time: {estimatedTime}."
    ),
    "leave": (
        "Token #{tokenNumber}: Clinic will be closed on {date} due to {reason}. "
        "Please book for another day."
    ),
    "emergency_leave": (
        "Token #{tokenNumber}: Emergency clinic closure today due to {reason}. "
        "Your appointment has been cancelled. We apologize for the inconvenience."
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "--"


def render_message(notification: Dict[str, Any]) -> Optional[str]:
    template = MESSAGES.get(notification.get("messageKind", ""))
    if template is None:
        return None
    values = _Defaults(notification.get("context") or {})
    values.setdefault("tokenNumber", notification.get("tokenNumber"))
    values.setdefault("bookingDate", notification.get("bookingDate"))
    return template.format_map(values)


class NotificationWorker:
    def __init__(self, redis_client: Optional[redis.Redis] = None, twilio_client: Optional[Client] = None):
        self.redis_client = redis_client
        self.twilio_client = twilio_client

    def setup_connections(self) -> bool:
        """Initialize Redis and Twilio connections."""
        try:
            self.redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
            self.redis_client.ping()
            logger.info("✅ Connected to Redis: %s", config.REDIS_URL)
        except redis.RedisError as e:
            logger.error("❌ Failed to connect to Redis: %s", e)
            self.redis_client = None
            return False

        if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN:
            self.twilio_client = Client(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
            logger.info("✅ Twilio configured (WhatsApp sender %s)", config.TWILIO_WHATSAPP_NUMBER)
        else:
            logger.warning("⚠️  Twilio not configured - running in simulation mode")
        return True

    def send_message(self, channel: str, phone: str, message: str) -> bool:
        """Send one SMS or WhatsApp message via Twilio."""
        number = f"{config.COUNTRY_CODE}{phone}"
        if channel == "whatsapp":
            to_number, from_number = f"whatsapp:{number}", config.TWILIO_WHATSAPP_NUMBER
            if not from_number.startswith("whatsapp:"):
                from_number = f"whatsapp:{from_number}"
        else:
            to_number, from_number = number, config.TWILIO_PHONE_NUMBER

        if not self.twilio_client:
            logger.info("📱 [SIMULATION] %s to %s: %s...", channel, to_number, message[:50])
            return True
        try:
            message_obj = self.twilio_client.messages.create(from_=from_number, body=message, to=to_number)
            logger.info("✅ %s sent to %s: %s", channel, to_number, message_obj.sid)
            return True
        except TwilioException as e:
            logger.warning("❌ Failed to send %s to %s: %s", channel, to_number, e)
            return False

    def handle(self, notification: Dict[str, Any]) -> bool:
        """Deliver one request on every channel the patient opted into.

        Returns False when any channel failed; the request is then re-queued
        once.
        """
        phone = notification.get("phone")
        message = render_message(notification)
        channels = notification.get("channels") or []
        if not phone or not message:
            logger.warning("⚠️  Invalid notification: %s", notification)
            return True

        ok = all(self.send_message(channel, phone, message) for channel in channels)
        if ok:
            self.redis_client.lpush(config.NOTIFICATION_LOG, json.dumps({
                "phone": phone[-4:],  # Last 4 digits for privacy
                "kind": notification.get("messageKind"),
                "tokenId": notification.get("tokenId"),
                "sent_at": datetime.now().isoformat(),
                "status": "sent",
            }))
        elif not notification.get("retry"):
            retry = dict(notification, retry=True)
            self.redis_client.lpush(config.NOTIFICATION_QUEUE, json.dumps(retry))
        return ok

    def process_notifications(self) -> None:
        """Main worker loop to process the notification queue."""
        logger.info("🚀 Notification worker started - waiting for requests...")
        while True:
            try:
                item = self.redis_client.brpop(config.NOTIFICATION_QUEUE, timeout=5)
                if not item:
                    continue
                self.handle(json.loads(item[1]))
            except KeyboardInterrupt:
                logger.info("🛑 Worker stopped by user")
                break
            except (redis.RedisError, ValueError) as e:
                logger.error("❌ Error processing notification: %s", e)
                time.sleep(1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.redis_client.llen(config.NOTIFICATION_QUEUE),
            "total_sent": self.redis_client.llen(config.NOTIFICATION_LOG),
            "worker_status": "running",
            "last_check": datetime.now().isoformat(),
        }


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    logger.info("🏥 Clinic Queue - Notification Worker")

    if not config.REDIS_URL:
        logger.error("❌ REDIS_URL environment variable required")
        return

    worker = NotificationWorker()
    if worker.setup_connections():
        worker.process_notifications()
    else:
        logger.error("❌ Cannot start without Redis connection")


if __name__ == "__main__":
    main()
