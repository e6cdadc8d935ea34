"""Doctor sessions, delays and leaves.

    scheduled -> active -> paused -> active -> ended
    active | paused -> cancelled   (emergency leave)

The functions here change rows in an open SQLModel ``Session``; locking,
committing and fan-out are done by ``services.ClinicService``.  Elapsed and
remaining session time are computed on demand by ``session_timing`` from the
stored timestamps, there is no running timer.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from . import store
from .errors import InvalidTransition, NotFound, ValidationError
from .models import (
    ClinicSession,
    ClinicSettings,
    Leave,
    LeaveType,
    SessionStatus,
    SessionType,
    Token,
    TokenStatus,
)
from .queue_state import mark_cancelled

logger = logging.getLogger(__name__)

SESSION_ENDED_REASON = "session ended"
EMERGENCY_REASON = "emergency leave"
DEFAULT_AVG_WAIT_MINUTES = 15

# Clinic hours: morning 09:00-13:00, evening 17:00-20:00
SHIFT_MINUTES = {
    SessionType.morning: 240,
    SessionType.evening: 180,
    SessionType.full_day: 420,
}


def get_session(db: Session, doctor_id: str, day: date) -> Optional[ClinicSession]:
    stmt = select(ClinicSession).where(ClinicSession.doctor_id == doctor_id, ClinicSession.session_date == day)
    return db.exec(stmt).first()


def delay_for(db: Session, day: date) -> int:
    stmt = select(func.coalesce(func.sum(ClinicSession.delay_minutes), 0)).where(ClinicSession.session_date == day)
    return int(db.exec(stmt).one())


def _status(session: ClinicSession) -> str:
    return SessionStatus(session.status).value


def _refuse(session: ClinicSession, action: str) -> None:
    raise InvalidTransition(session.id, _status(session), action, entity="session")


def start(db: Session, doctor_id: str, day: date, now: datetime, session_type: SessionType = SessionType.morning) -> ClinicSession:
    """Create the day's session, or resume it."""
    session = get_session(db, doctor_id, day)
    if session is None:
        session = ClinicSession(
            doctor_id=doctor_id,
            session_date=day,
            type=session_type,
            status=SessionStatus.active,
            start_time=now,
            created_at=now,
            updated_at=now,
        )
    elif session.status == SessionStatus.active:
        return session
    elif session.status in (SessionStatus.scheduled, SessionStatus.paused):
        if session.start_time is None:
            session.start_time = now
            session.type = session_type
        if session.paused_at is not None:
            session.paused_seconds += int((now - session.paused_at).total_seconds())
        session.paused_at = None
        session.status = SessionStatus.active
        session.updated_at = now
    else:
        _refuse(session, "start")
    db.add(session)
    db.flush()
    logger.info("Session %s for %s on %s is active", session.id, doctor_id, day)
    return session


def pause(db: Session, doctor_id: str, day: date, now: datetime) -> ClinicSession:
    session = _require(db, doctor_id, day)
    if session.status != SessionStatus.active:
        _refuse(session, "pause")
    session.status = SessionStatus.paused
    session.paused_at = now
    session.updated_at = now
    db.add(session)
    db.flush()
    return session


def _require(db: Session, doctor_id: str, day: date) -> ClinicSession:
    session = get_session(db, doctor_id, day)
    if session is None:
        raise NotFound(f"No session for {doctor_id} on {day.isoformat()}", doctor=doctor_id, date=day.isoformat())
    return session


def rollup(db: Session, day: date) -> Dict[str, Any]:
    counts = store.count_by_status(db, day)
    served = store.tokens_for_date(db, day, [TokenStatus.served])
    waits = [t.actual_wait_time for t in served if t.actual_wait_time is not None]
    return {
        "total_patients": sum(counts.values()),
        "served_patients": counts["served"],
        "skipped_patients": counts["skipped"],
        "cancelled_patients": counts["cancelled"],
        "avg_wait_time": round(sum(waits) / len(waits), 1) if waits else 0.0,
    }


def end(db: Session, doctor_id: str, day: date, now: datetime) -> Tuple[ClinicSession, List[Token]]:
    """End the session.

    The day's counts are captured first, then every still-waiting token is
    cancelled with reason "session ended".
    """
    session = _require(db, doctor_id, day)
    if session.status not in (SessionStatus.active, SessionStatus.paused):
        _refuse(session, "end")

    for field, value in rollup(db, day).items():
        setattr(session, field, value)
    if session.paused_at is not None:
        session.paused_seconds += int((now - session.paused_at).total_seconds())
        session.paused_at = None
    session.status = SessionStatus.ended
    session.end_time = now
    session.updated_at = now
    db.add(session)

    cancelled = []
    for token in store.waiting_tokens(db, day):
        cancelled.append(mark_cancelled(token, now, SESSION_ENDED_REASON))
        db.add(token)
    db.flush()
    logger.info("Session %s ended; %d waiting tokens cancelled", session.id, len(cancelled))
    return session, cancelled


def add_delay(db: Session, doctor_id: str, day: date, minutes: int, now: datetime) -> ClinicSession:
    if minutes is None or minutes <= 0:
        raise ValidationError("Delay must be a positive number of minutes", delayMinutes=minutes)
    session = get_session(db, doctor_id, day)
    if session is None:
        session = ClinicSession(doctor_id=doctor_id, session_date=day, created_at=now)
    elif session.status in (SessionStatus.ended, SessionStatus.cancelled):
        _refuse(session, "delay")
    session.delay_minutes += minutes
    session.last_delay_at = now
    session.updated_at = now
    db.add(session)
    db.flush()
    return session


def schedule_leave(db: Session, day: date, reason: str, today: date, notes: Optional[str] = None) -> Leave:
    if day < today:
        raise ValidationError("Cannot schedule leave for a past date", date=day.isoformat())
    if store.leave_for(db, day) is not None:
        raise ValidationError("Leave already scheduled for this date", date=day.isoformat())
    leave = Leave(leave_date=day, reason=reason, notes=notes, type=LeaveType.planned)
    db.add(leave)
    db.flush()
    return leave


def emergency_leave(
    db: Session, doctor_id: str, today: date, reason: str, now: datetime
) -> Tuple[Leave, List[Token], Optional[ClinicSession]]:
    """Close today: cancel every waiting token and cancel a running session.

    Calling it again cancels nothing new and reuses the existing leave.
    """
    cancelled = []
    for token in store.waiting_tokens(db, today):
        cancelled.append(mark_cancelled(token, now, EMERGENCY_REASON))
        db.add(token)

    leave = store.emergency_leave_for(db, today)
    if leave is None:
        leave = Leave(leave_date=today, reason=reason, type=LeaveType.emergency, created_at=now)
        db.add(leave)

    session = get_session(db, doctor_id, today)
    if session is not None and session.status in (SessionStatus.active, SessionStatus.paused):
        session.status = SessionStatus.cancelled
        session.end_time = now
        session.updated_at = now
        db.add(session)
    db.flush()
    logger.info("Emergency leave on %s: %d tokens cancelled", today, len(cancelled))
    return leave, cancelled, session


def session_timing(session: ClinicSession, now: datetime) -> Dict[str, Any]:
    """Elapsed and remaining working minutes, derived from stored timestamps only."""
    if session.start_time is None:
        return {"elapsedMinutes": 0, "remainingMinutes": None, "paused": False}
    until = session.end_time or session.paused_at or now
    paused = session.paused_seconds
    elapsed = max((until - session.start_time).total_seconds() - paused, 0) / 60
    planned = SHIFT_MINUTES.get(SessionType(session.type), SHIFT_MINUTES[SessionType.morning])
    remaining = max(planned + session.delay_minutes - elapsed, 0)
    return {
        "elapsedMinutes": int(elapsed),
        "remainingMinutes": int(remaining),
        "paused": session.paused_at is not None,
    }


def daily_stats(db: Session, day: date, settings: ClinicSettings) -> Dict[str, Any]:
    counts = store.count_by_status(db, day)
    served = store.tokens_for_date(db, day, [TokenStatus.served])
    waits = [t.actual_wait_time for t in served if t.actual_wait_time is not None]
    total = sum(counts.values())
    return {
        "date": day.isoformat(),
        "totalPatients": total,
        "waitingPatients": counts["waiting"],
        "calledPatients": counts["called"],
        "servedPatients": counts["served"],
        "skippedPatients": counts["skipped"],
        "cancelledPatients": counts["cancelled"],
        "avgWaitTime": round(sum(waits) / len(waits)) if waits else DEFAULT_AVG_WAIT_MINUTES,
        "availableTokens": max(0, settings.max_tokens_per_day - store.booked_count(db, day)),
    }
