"""Token store queries, token numbering and booking availability.

All helpers take an open SQLModel ``Session`` and only read; inserts and
updates happen in ``services.py`` under the per-date lock.  Tokens are grouped by ``booking_date``, a plain calendar date.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .errors import NotFound
from .models import ClinicSettings, Leave, LeaveType, Token, TokenStatus

# Tokens counted against the daily limit
BOOKED_STATUSES = (TokenStatus.waiting, TokenStatus.served)


@dataclass
class Availability:
    available: bool
    reason: Optional[str] = None
    reason_code: Optional[str] = None
    remaining: Optional[int] = None
    booked: int = 0
    capacity: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_token(db: Session, token_id: int) -> Token:
    token = db.get(Token, token_id)
    if token is None:
        raise NotFound(f"Token {token_id} not found", id=token_id)
    return token


def tokens_for_date(db: Session, day: date, statuses: Optional[Iterable[TokenStatus]] = None) -> List[Token]:
    stmt = select(Token).where(Token.booking_date == day)
    if statuses is not None:
        stmt = stmt.where(Token.status.in_(list(statuses)))
    return list(db.exec(stmt.order_by(Token.token_number)))


def waiting_tokens(db: Session, day: date, limit: Optional[int] = None) -> List[Token]:
    stmt = (
        select(Token)
        .where(Token.booking_date == day, Token.status == TokenStatus.waiting)
        .order_by(Token.token_number)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.exec(stmt))


def called_tokens(db: Session, day: date) -> List[Token]:
    return tokens_for_date(db, day, [TokenStatus.called])


def current_called(db: Session, day: date) -> Optional[Token]:
    stmt = (
        select(Token)
        .where(Token.booking_date == day, Token.status == TokenStatus.called)
        .order_by(Token.called_at.desc(), Token.token_number.desc())
    )
    return db.exec(stmt).first()


def last_served(db: Session, day: date) -> Optional[Token]:
    stmt = (
        select(Token)
        .where(Token.booking_date == day, Token.status == TokenStatus.served)
        .order_by(Token.served_at.desc(), Token.token_number.desc())
    )
    return db.exec(stmt).first()


def current_serving(db: Session, day: date) -> Optional[Token]:
    """The patient with the doctor: the called token, else the last one served."""
    return current_called(db, day) or last_served(db, day)


def count_by_status(db: Session, day: date) -> Dict[str, int]:
    stmt = (
        select(Token.status, func.count())
        .where(Token.booking_date == day)
        .group_by(Token.status)
    )
    counts = {s.value: 0 for s in TokenStatus}
    for status, n in db.exec(stmt):
        key = status.value if isinstance(status, TokenStatus) else str(status)
        counts[key] = n
    return counts


def find_by_number(db: Session, day: date, token_number: int) -> Optional[Token]:
    stmt = select(Token).where(Token.booking_date == day, Token.token_number == token_number)
    return db.exec(stmt).first()


def find_by_phone(db: Session, phone: str, day: Optional[date] = None, today: Optional[date] = None) -> Optional[Token]:
    """Look up a booking by phone.

    With ``day`` this is an exact (phone, date) lookup.  Without it, the most
    recently created booking on or after ``today`` wins.
    """
    stmt = select(Token).where(Token.patient_phone == phone)
    if day is not None:
        stmt = stmt.where(Token.booking_date == day)
    elif today is not None:
        stmt = stmt.where(Token.booking_date >= today)
    stmt = stmt.order_by(Token.created_at.desc(), Token.id.desc())
    return db.exec(stmt).first()


def next_token_number(db: Session, day: date) -> int:
    """``1 + max(token_number)`` over every token of ``day``, whatever its status."""
    highest = db.exec(select(func.max(Token.token_number)).where(Token.booking_date == day)).one()
    return (highest or 0) + 1


def leave_for(db: Session, day: date) -> Optional[Leave]:
    return db.exec(select(Leave).where(Leave.leave_date == day).order_by(Leave.id)).first()


def emergency_leave_for(db: Session, day: date) -> Optional[Leave]:
    stmt = select(Leave).where(Leave.leave_date == day, Leave.type == LeaveType.emergency)
    return db.exec(stmt).first()


def booked_count(db: Session, day: date) -> int:
    stmt = select(func.count()).select_from(Token).where(
        Token.booking_date == day, Token.status.in_(list(BOOKED_STATUSES))
    )
    return db.exec(stmt).one()


def check_availability(db: Session, day: date, today: date, settings: ClinicSettings) -> Availability:
    capacity = settings.max_tokens_per_day
    if day < today:
        return Availability(False, "Cannot book for past dates", "past_date", capacity=capacity)
    if day.weekday() not in settings.working_weekdays():
        return Availability(False, "Clinic is closed on this day", "closed_weekday", capacity=capacity)
    leave = leave_for(db, day)
    if leave is not None:
        return Availability(False, f"Doctor is on leave on this date: {leave.reason}", "leave", capacity=capacity)
    booked = booked_count(db, day)
    if booked >= capacity:
        return Availability(
            False, "All tokens for this date are booked", "capacity",
            remaining=0, booked=booked, capacity=capacity,
        )
    return Availability(True, remaining=capacity - booked, booked=booked, capacity=capacity)
