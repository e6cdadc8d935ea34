# tests/test_numbering.py
from datetime import date

import pytest
from sqlmodel import Session, select

from clinic_queue import store
from clinic_queue.database import get_settings
from clinic_queue.errors import CapacityExceeded, ClosedDate, ValidationError
from clinic_queue.models import Token

from .conftest import START

MONDAY = date(2026, 10, 19)
TUESDAY = date(2026, 10, 20)
SATURDAY = date(2026, 10, 24)


def test_numbers_start_at_one_and_increase_by_one(book):
    numbers = [book()["tokenNumber"] for _ in range(4)]
    assert numbers == [1, 2, 3, 4]


def test_numbers_are_per_date(book):
    assert book()["tokenNumber"] == 1
    assert book(day=TUESDAY)["tokenNumber"] == 1
    assert book()["tokenNumber"] == 2


def test_numbers_never_reused_after_cancellation(book, service):
    book()
    second = book()
    service.cancel(second["token"]["id"])
    third = book()
    assert third["tokenNumber"] == 3
    service.cancel(third["token"]["id"])
    assert book()["tokenNumber"] == 4


def test_next_token_number_counts_every_status(engine, book, service):
    first = book()
    service.call_next()
    service.serve_current()
    book()
    service.skip(service.call_next().id)
    with Session(engine) as db:
        assert store.next_token_number(db, MONDAY) == 3
        assert store.next_token_number(db, TUESDAY) == 1
    assert first["tokenNumber"] == 1


def test_thirtieth_booking_succeeds_and_thirty_first_fails(book, service):
    results = [book() for _ in range(30)]
    assert results[-1]["tokenNumber"] == 30

    with pytest.raises(CapacityExceeded) as excinfo:
        book()
    assert excinfo.value.context["booked"] == 30
    assert len(service.tokens_for_day()) == 30


def test_cancelled_and_skipped_tokens_free_capacity(book, service, update_settings):
    update_settings(max_tokens_per_day=3)
    tokens = [book() for _ in range(3)]
    with pytest.raises(CapacityExceeded):
        book()

    service.cancel(tokens[0]["token"]["id"])
    assert book()["tokenNumber"] == 4

    service.skip(tokens[1]["token"]["id"])
    assert book()["tokenNumber"] == 5


def test_served_tokens_count_against_capacity(book, service, update_settings):
    update_settings(max_tokens_per_day=2)
    book()
    book()
    service.call_next()
    service.serve_current()
    with pytest.raises(CapacityExceeded):
        book()


def test_past_date_is_closed(book):
    with pytest.raises(ClosedDate) as excinfo:
        book(day=date(2026, 10, 16))
    assert excinfo.value.context["reason"] == "past_date"


def test_weekend_is_closed(book):
    with pytest.raises(ClosedDate) as excinfo:
        book(day=SATURDAY)
    assert excinfo.value.context["reason"] == "closed_weekday"


def test_working_days_come_from_settings(book, update_settings):
    update_settings(working_days="0,1,2,3,4,5")
    assert book(day=SATURDAY)["tokenNumber"] == 1


def test_planned_leave_blocks_booking(book, service):
    service.schedule_leave(TUESDAY, "conference")
    with pytest.raises(ClosedDate) as excinfo:
        book(day=TUESDAY)
    assert excinfo.value.context["reason"] == "leave"
    assert service.availability(TUESDAY)["reason_code"] == "leave"


def test_malformed_phone_is_rejected_before_the_store(book, service):
    with pytest.raises(ValidationError):
        book(patientPhone="12345")
    with pytest.raises(ValidationError):
        book(patientPhone="98765abcde")
    assert service.tokens_for_day() == []


def test_missing_field_is_rejected(service):
    with pytest.raises(ValidationError) as excinfo:
        service.book({"patientPhone": "9876500001", "bookingDate": MONDAY.isoformat()})
    assert any("patientName" in e for e in excinfo.value.context["errors"])


def test_booking_date_time_of_day_is_ignored(book):
    result = book(bookingDate="2026-10-20T15:45:00")
    assert result["token"]["booking_date"] == "2026-10-20"


def test_availability_reports_remaining(book, service):
    book()
    book()
    result = service.availability(MONDAY)
    assert result["available"] is True
    assert result["remaining"] == 28
    assert result["booked"] == 2


def test_check_availability_is_a_pure_query(engine, book):
    book()
    with Session(engine) as db:
        settings = get_settings(db)
        before = len(db.exec(select(Token)).all())
        store.check_availability(db, MONDAY, MONDAY, settings)
        assert len(db.exec(select(Token)).all()) == before


def test_timestamps_are_stored_as_the_clock_reads_them(book, service, fetch, clock):
    token_id = book()["token"]["id"]
    clock.advance(12)
    service.call_next()

    token = fetch(token_id)
    assert token.created_at == START
    assert token.called_at == clock.now
    assert token.created_at.tzinfo is None
