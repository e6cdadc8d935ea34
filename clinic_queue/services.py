"""Queue operations used by the HTTP layer.

Every mutation follows the same path: take the per-date lock, open a fresh
database session, apply the change, recompute the day's ETAs, commit, release
the lock, and only then hand the collected events and notification requests
to the broadcaster and the notifier.  Delivery problems therefore can't roll
back or block a booking or a status change.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlmodel import Session

from . import config, eta, sessions, store
from .broadcast import (
    EMERGENCY_LEAVE,
    NEW_BOOKING,
    PATIENT_CANCELLED,
    QUEUE_UPDATE,
    SESSION_UPDATE,
    TOKEN_UPDATE,
    Broadcaster,
    RedisPublisher,
    build_snapshot,
    serial_executor,
    token_payload,
)
from .database import get_engine, get_settings, init_db, session_scope
from .errors import CapacityExceeded, ClosedDate, NoPatientCalled, NoPatientsWaiting, NotFound, ValidationError
from .locks import DateLocks
from .models import ClinicSession, SessionType, Token, TokenStatus
from .notifier import (
    BOOKING_CONFIRMED,
    CALLED,
    CANCELLED,
    DELAY,
    EMERGENCY_LEAVE as EMERGENCY_NOTICE,
    LEAVE,
    OPERATOR_KINDS,
    SERVED,
    Notifier,
)
from .queue_state import ensure, mark_called, mark_cancelled, mark_served, mark_skipped, revert_to_waiting
from .redis_client import get_redis
from .schemas import PHONE_RE, BookingRequest

logger = logging.getLogger(__name__)

PATIENT_CANCEL_REASON = "cancelled by patient"
OPERATOR_CANCEL_REASON = "cancelled by doctor"
NOTICE_DELAY_MINUTES = 15


class Outbox:
    """Events and notification requests collected during one transaction."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.notifications: List[Tuple[Token, str, Dict[str, Any]]] = []

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def notify(self, token: Token, kind: str, **context: Any) -> None:
        self.notifications.append((token, kind, context))


class ClinicService:
    def __init__(
        self,
        engine: Engine,
        broadcaster: Optional[Broadcaster] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.now,
        doctor_id: str = config.DOCTOR_ID,
        lock_timeout: float = config.LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self.broadcaster = broadcaster or Broadcaster()
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.doctor_id = doctor_id
        self.locks = DateLocks(lock_timeout)

    def today(self) -> date:
        return self.clock().date()

    # ===== TRANSACTION PLUMBING =====

    @contextmanager
    def _mutation(self, day: date) -> Iterator[Outbox]:
        with self.locks.hold(day):
            with session_scope(self.engine) as db:
                outbox = Outbox(db)
                yield outbox
        self._dispatch(outbox)
        self.locks.prune(self.today())

    def _dispatch(self, outbox: Outbox) -> None:
        for event, payload in outbox.events:
            self.broadcaster.publish(event, payload)
        for token, kind, context in outbox.notifications:
            self.notifier.request(token, kind, **context)

    def _refresh_queue(self, out: Outbox, day: date, now: datetime) -> Dict[str, Any]:
        """Recompute the day's ETAs and queue the fresh snapshot for broadcast."""
        settings = get_settings(out.db)
        delay = sessions.delay_for(out.db, day)
        eta.recompute_all(out.db, day, delay, now, settings)
        snapshot = build_snapshot(out.db, day, settings, delay)
        out.publish(QUEUE_UPDATE, snapshot)
        return snapshot

    def _day_of(self, token_id: int) -> date:
        with session_scope(self.engine) as db:
            return store.get_token(db, token_id).booking_date

    def _transition(self, out: Outbox, day: date, now: datetime, changed: List[Token]) -> None:
        out.db.add_all(changed)
        out.db.flush()
        self._refresh_queue(out, day, now)
        for token in changed:
            out.publish(TOKEN_UPDATE, token_payload(token))

    # ===== BOOKING AND LOOKUP =====

    def book(self, request: Union[BookingRequest, Dict[str, Any]]) -> Dict[str, Any]:
        req = parse_booking(request)
        day = req.booking_date
        now = self.clock()
        with self._mutation(day) as out:
            db = out.db
            settings = get_settings(db)
            availability = store.check_availability(db, day, now.date(), settings)
            if not availability.available:
                if availability.reason_code == "capacity":
                    raise CapacityExceeded(
                        availability.reason, date=day.isoformat(),
                        booked=availability.booked, capacity=availability.capacity,
                    )
                raise ClosedDate(availability.reason, date=day.isoformat(), reason=availability.reason_code)

            token = Token(
                token_number=store.next_token_number(db, day),
                booking_date=day,
                patient_name=req.patient_name,
                patient_phone=req.patient_phone,
                patient_age=req.patient_age,
                patient_gender=req.patient_gender,
                symptoms=req.symptoms,
                notify_sms=req.notifications.sms,
                notify_whatsapp=req.notifications.whatsapp,
                created_at=now,
                updated_at=now,
            )
            db.add(token)
            db.flush()
            self._refresh_queue(out, day, now)
            ahead = eta.wait_ahead(db, token)
            serving = store.current_serving(db, day)
            result = {
                "tokenNumber": token.token_number,
                "estimatedTime": token.estimated_time,
                "waitAhead": ahead,
                "currentServing": serving.token_number if serving else None,
                "token": token_payload(token),
            }
            out.publish(NEW_BOOKING, result["token"])
            out.notify(token, BOOKING_CONFIRMED, estimatedTime=token.estimated_time, waitAhead=ahead)
        logger.info("Booked token #%s for %s", token.token_number, day)
        return result

    def lookup_status(self, search: str, day: Optional[date] = None) -> Dict[str, Any]:
        """Find a booking by 10-digit phone or by token number.

        A token number is looked up on ``day`` (today by default).  A phone
        with ``day`` is an exact lookup; without it the most recently created
        booking on or after today is returned.
        """
        search = (search or "").strip()
        if not search:
            raise ValidationError("Please provide token number or phone number")
        today = self.today()
        with session_scope(self.engine) as db:
            if PHONE_RE.match(search):
                token = store.find_by_phone(db, search, day=day, today=today)
            elif search.isdigit():
                token = store.find_by_number(db, day or today, int(search))
            else:
                raise ValidationError("Search must be a token number or a 10-digit phone", search=search)
            if token is None:
                raise NotFound("Token not found", search=search)
            serving = store.current_serving(db, token.booking_date)
            return {
                "token": token_payload(token),
                "waitAhead": eta.wait_ahead(db, token),
                "currentServing": serving.token_number if serving else None,
            }

    # ===== QUEUE STATE MACHINE =====

    def call_next(self, day: Optional[date] = None) -> Token:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            waiting = store.waiting_tokens(out.db, day, limit=1)
            if not waiting:
                raise NoPatientsWaiting(f"No more patients in queue for {day.isoformat()}", date=day.isoformat())
            token = waiting[0]
            reverted = [revert_to_waiting(t, now) for t in store.called_tokens(out.db, day)]
            mark_called(token, now)
            self._transition(out, day, now, reverted + [token])
            out.notify(token, CALLED)
        logger.info("Called token #%s on %s", token.token_number, day)
        return token

    def call_specific(self, token_id: int) -> Token:
        day = self._day_of(token_id)
        now = self.clock()
        with self._mutation(day) as out:
            token = store.get_token(out.db, token_id)
            ensure(token, "call")
            reverted = [revert_to_waiting(t, now) for t in store.called_tokens(out.db, day)]
            mark_called(token, now)
            self._transition(out, day, now, reverted + [token])
            out.notify(token, CALLED)
        return token

    def serve_current(self, day: Optional[date] = None) -> Token:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            token = store.current_called(out.db, day)
            if token is None:
                raise NoPatientCalled("No patient is currently called", date=day.isoformat())
            mark_served(token, now)
            self._transition(out, day, now, [token])
            out.notify(token, SERVED)
        logger.info("Served token #%s (waited %s min)", token.token_number, token.actual_wait_time)
        return token

    def serve(self, token_id: int) -> Token:
        day = self._day_of(token_id)
        now = self.clock()
        with self._mutation(day) as out:
            token = mark_served(store.get_token(out.db, token_id), now)
            self._transition(out, day, now, [token])
            out.notify(token, SERVED)
        return token

    def skip_current(self, day: Optional[date] = None) -> Token:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            token = store.current_called(out.db, day)
            if token is None:
                raise NoPatientCalled("No patient is currently called", date=day.isoformat())
            mark_skipped(token, now)
            self._transition(out, day, now, [token])
        logger.info("Skipped token #%s", token.token_number)
        return token

    def skip(self, token_id: int) -> Token:
        day = self._day_of(token_id)
        now = self.clock()
        with self._mutation(day) as out:
            token = mark_skipped(store.get_token(out.db, token_id), now)
            self._transition(out, day, now, [token])
        return token

    def cancel(self, token_id: int, reason: Optional[str] = None, force: bool = False) -> Token:
        """Cancel a token.  ``force`` is the operator path and also cancels a called token."""
        day = self._day_of(token_id)
        now = self.clock()
        reason = reason or (OPERATOR_CANCEL_REASON if force else PATIENT_CANCEL_REASON)
        with self._mutation(day) as out:
            token = mark_cancelled(store.get_token(out.db, token_id), now, reason, force=force)
            out.db.add(token)
            out.db.flush()
            self._refresh_queue(out, day, now)
            out.publish(PATIENT_CANCELLED, token_payload(token))
            out.notify(token, CANCELLED, reason=reason)
        return token

    # ===== SESSIONS AND LEAVES =====

    def _session_payload(self, session: Optional[ClinicSession], now: datetime) -> Optional[Dict[str, Any]]:
        if session is None:
            return None
        payload = session.model_dump(mode="json")
        payload["timing"] = sessions.session_timing(session, now)
        return payload

    def start_session(self, session_type: SessionType = SessionType.morning, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            session = sessions.start(out.db, self.doctor_id, day, now, session_type)
            payload = self._session_payload(session, now)
            out.publish(SESSION_UPDATE, payload)
        return payload

    def pause_session(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            session = sessions.pause(out.db, self.doctor_id, day, now)
            payload = self._session_payload(session, now)
            out.publish(SESSION_UPDATE, payload)
        return payload

    def end_session(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            session, cancelled = sessions.end(out.db, self.doctor_id, day, now)
            self._refresh_queue(out, day, now)
            payload = self._session_payload(session, now)
            payload["cancelledCount"] = len(cancelled)
            out.publish(SESSION_UPDATE, payload)
            for token in cancelled:
                out.notify(token, CANCELLED, reason=sessions.SESSION_ENDED_REASON)
        return payload

    def add_delay(self, minutes: int, day: Optional[date] = None) -> Dict[str, Any]:
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValidationError("Delay must be a positive number of minutes", delayMinutes=minutes)
        day = day or self.today()
        now = self.clock()
        with self._mutation(day) as out:
            session = sessions.add_delay(out.db, self.doctor_id, day, minutes, now)
            self._refresh_queue(out, day, now)
            payload = self._session_payload(session, now)
            out.publish(SESSION_UPDATE, payload)
            for token in store.waiting_tokens(out.db, day):
                out.notify(token, DELAY, delayMinutes=minutes, estimatedTime=token.estimated_time)
        logger.info("Added %d min delay on %s", minutes, day)
        return payload

    def schedule_leave(self, day: date, reason: str, notes: Optional[str] = None) -> Dict[str, Any]:
        with self._mutation(day) as out:
            leave = sessions.schedule_leave(out.db, day, reason, self.today(), notes)
            for token in store.waiting_tokens(out.db, day):
                out.notify(token, LEAVE, reason=reason, date=day.isoformat())
            payload = leave.model_dump(mode="json")
        return payload

    def emergency_leave(self, reason: str) -> Dict[str, Any]:
        day = self.today()
        now = self.clock()
        with self._mutation(day) as out:
            leave, cancelled, _session = sessions.emergency_leave(out.db, self.doctor_id, day, reason, now)
            self._refresh_queue(out, day, now)
            result = {
                "leave": leave.model_dump(mode="json"),
                "cancelledCount": len(cancelled),
                "date": day.isoformat(),
            }
            out.publish(EMERGENCY_LEAVE, {"reason": reason, "cancelledCount": len(cancelled), "date": day.isoformat()})
            for token in cancelled:
                out.notify(token, EMERGENCY_NOTICE, reason=reason)
        logger.warning("Emergency leave on %s (%s): %d tokens cancelled", day, reason, len(cancelled))
        return result

    # ===== READ-ONLY VIEWS =====

    def queue_snapshot(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        with session_scope(self.engine) as db:
            return build_snapshot(db, day, get_settings(db), sessions.delay_for(db, day))

    def queue(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Dashboard view: waiting and called tokens, the current patient and counters."""
        day = day or self.today()
        with session_scope(self.engine) as db:
            tokens = store.tokens_for_date(db, day, [TokenStatus.waiting, TokenStatus.called])
            current = store.current_called(db, day)
            return {
                "queue": [token_payload(t) for t in tokens],
                "currentPatient": token_payload(current) if current else None,
                "stats": sessions.daily_stats(db, day, get_settings(db)),
            }

    def tokens_for_day(self, day: Optional[date] = None) -> List[Dict[str, Any]]:
        day = day or self.today()
        with session_scope(self.engine) as db:
            return [token_payload(t) for t in store.tokens_for_date(db, day)]

    def availability(self, day: date) -> Dict[str, Any]:
        with session_scope(self.engine) as db:
            return store.check_availability(db, day, self.today(), get_settings(db)).as_dict()

    def daily_stats(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.today()
        with session_scope(self.engine) as db:
            return sessions.daily_stats(db, day, get_settings(db))

    def current_session(self, day: Optional[date] = None) -> Optional[Dict[str, Any]]:
        day = day or self.today()
        with session_scope(self.engine) as db:
            return self._session_payload(sessions.get_session(db, self.doctor_id, day), self.clock())

    # ===== NOTIFICATIONS =====

    def notify(self, token_id: int, kind: str, **context: Any) -> Optional[Dict[str, Any]]:
        """Send one notice to a single patient on the doctor's request.

        Returns the queued request, or None when the patient opted out of
        every channel.
        """
        if kind not in OPERATOR_KINDS:
            raise ValidationError(f"Invalid notification type: {kind}", kind=kind, allowed=list(OPERATOR_KINDS))
        with session_scope(self.engine) as db:
            token = store.get_token(db, token_id)
        context = {k: v for k, v in context.items() if v is not None}
        if kind == DELAY:
            context.setdefault("delayMinutes", NOTICE_DELAY_MINUTES)
            context.setdefault("estimatedTime", token.estimated_time)
        elif kind == CANCELLED:
            context.setdefault("reason", OPERATOR_CANCEL_REASON)
        return self.notifier.request(token, kind, **context)

    def notification_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.notifier.history(limit)


def parse_booking(request: Union[BookingRequest, Dict[str, Any]]) -> BookingRequest:
    if isinstance(request, BookingRequest):
        return request
    try:
        return BookingRequest.model_validate(request)
    except PydanticValidationError as exc:
        messages = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        raise ValidationError("Invalid booking request", errors=messages) from exc


def create_service(database_url: Optional[str] = None) -> ClinicService:
    """Build the service from environment configuration."""
    engine = get_engine(database_url)
    init_db(engine)

    broadcaster = Broadcaster(executor=serial_executor() if config.BROADCAST_ASYNC else None)
    redis_client = get_redis()
    if redis_client is not None:
        broadcaster.add(RedisPublisher(redis_client))

    return ClinicService(engine, broadcaster=broadcaster, notifier=Notifier(redis_client))
