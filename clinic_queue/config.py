"""Runtime configuration read from environment variables.

Infrastructure settings (database, Redis, Twilio) come from the environment.
Clinic-level tuning such as the per-patient service time or the daily token
limit is stored in the ``ClinicSettings`` row instead, see ``models.py``.
"""

from __future__ import annotations

import os

# If DATABASE_URL is not provided, default to a SQLite file named ``clinic.db``
# located next to this package.  PostgreSQL URLs are handed to SQLAlchemy as-is.
PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "clinic.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")

DOCTOR_ID = os.getenv("DOCTOR_ID", "primary")
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "2.0"))
BROADCAST_ASYNC = os.getenv("BROADCAST_ASYNC", "1") not in ("0", "false", "no")

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")
COUNTRY_CODE = os.getenv("COUNTRY_CODE", "+91")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))

# Redis keys shared by the app and the notification worker
UPDATES_CHANNEL = "clinic:updates"
QUEUE_CACHE_KEY = "clinic:queue"
NOTIFICATION_QUEUE = "clinic:notifications"
NOTIFICATION_LOG = "clinic:notification_logs"
