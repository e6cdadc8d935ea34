"""Queue position and estimated serve time.

ETA for a waiting token is ``now + wait_ahead * per_patient + delay``.  The
per-patient time is the clinic's configured service time, or the rolling
average of the day's served tokens when that mode is switched on.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .models import ClinicSettings, Token, TokenStatus
from .store import waiting_tokens

DEFAULT_PER_PATIENT_MINUTES = 10.0
ETA_FORMAT = "%I:%M %p"


def format_eta(when: datetime) -> str:
    return when.strftime(ETA_FORMAT)


def wait_ahead(db: Session, token: Token) -> int:
    stmt = select(func.count()).select_from(Token).where(
        Token.booking_date == token.booking_date,
        Token.status == TokenStatus.waiting,
        Token.token_number < token.token_number,
    )
    return db.exec(stmt).one()


def per_patient_minutes(db: Session, day: date, settings: Optional[ClinicSettings] = None) -> float:
    default = settings.avg_service_minutes if settings else DEFAULT_PER_PATIENT_MINUTES
    if not default or default <= 0:
        default = DEFAULT_PER_PATIENT_MINUTES
    if settings is None or not settings.rolling_average:
        return default

    served = db.exec(
        select(Token).where(
            Token.booking_date == day,
            Token.status == TokenStatus.served,
            Token.served_at.is_not(None),
        )
    ).all()
    if not served:
        return default
    total = sum((t.served_at - t.created_at).total_seconds() for t in served)
    return max(total / len(served) / 60.0, 0.0)


def estimated_serve_time(
    db: Session,
    token: Token,
    delay_minutes: int,
    now: datetime,
    settings: Optional[ClinicSettings] = None,
) -> datetime:
    minutes = wait_ahead(db, token) * per_patient_minutes(db, token.booking_date, settings) + delay_minutes
    return now + timedelta(minutes=minutes)


def recompute_all(
    db: Session,
    day: date,
    delay_minutes: int,
    now: datetime,
    settings: Optional[ClinicSettings] = None,
) -> List[Token]:
    """Rewrite the ETA of every waiting token of ``day`` in ascending number order.

    A token's index in the ordered waiting list is its ``wait_ahead``.
    Re-running without intervening mutations and with the same ``now``
    writes identical values.
    """
    per_patient = per_patient_minutes(db, day, settings)
    tokens = waiting_tokens(db, day)
    for ahead, token in enumerate(tokens):
        eta = now + timedelta(minutes=ahead * per_patient + delay_minutes)
        token.estimated_serve_at = eta
        token.estimated_time = format_eta(eta)
        db.add(token)
    db.flush()
    return tokens
