# tests/test_notifications.py
import json

import pytest
import redis

from clinic_queue import config
from clinic_queue.errors import NotFound, ValidationError
from clinic_queue.notifier import Notifier
from clinic_queue.services import ClinicService


class LogRedis:
    def __init__(self, entries=(), fail=False):
        self.entries = [json.dumps(e) for e in entries]
        self.fail = fail
        self.ranges = []

    def lrange(self, key, start, end):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.ranges.append((key, start, end))
        return self.entries[start:end + 1]


def test_delay_notice_defaults(book, service, notifier):
    token_id = book()["token"]["id"]
    service.notify(token_id, "delay")
    sent = notifier.sent[-1]
    assert sent["kind"] == "delay"
    assert sent["context"] == {"delayMinutes": 15, "estimatedTime": "09:00 AM"}


def test_delay_notice_keeps_given_minutes(book, service, notifier):
    token_id = book()["token"]["id"]
    service.notify(token_id, "delay", delayMinutes=30)
    assert notifier.sent[-1]["context"]["delayMinutes"] == 30


def test_cancel_notice_carries_reason(book, service, notifier):
    token_id = book()["token"]["id"]
    service.notify(token_id, "cancelled")
    assert notifier.sent[-1]["context"] == {"reason": "cancelled by doctor"}

    service.notify(token_id, "cancelled", reason="clinic flooded")
    assert notifier.sent[-1]["context"] == {"reason": "clinic flooded"}


def test_notice_does_not_touch_the_queue(book, service, publisher, fetch):
    token_id = book()["token"]["id"]
    before = len(publisher.history)
    service.notify(token_id, "called")
    assert fetch(token_id).status == "waiting"
    assert len(publisher.history) == before


@pytest.mark.parametrize("kind", ["birthday", "booking_confirmed", "leave"])
def test_unknown_notice_kind_is_rejected(book, service, notifier, kind):
    token_id = book()["token"]["id"]
    before = len(notifier.sent)
    with pytest.raises(ValidationError) as excinfo:
        service.notify(token_id, kind)
    assert excinfo.value.status_code == 422
    assert len(notifier.sent) == before


def test_notice_for_unknown_token(service):
    with pytest.raises(NotFound):
        service.notify(999, "called")


def test_patient_without_channels_gets_nothing(engine, clock):
    service = ClinicService(engine, notifier=Notifier(), clock=clock)
    result = service.book({
        "patientName": "Kiran",
        "patientPhone": "9876512345",
        "patientAge": 61,
        "bookingDate": "2026-10-19",
        "notifications": {"sms": False, "whatsapp": False},
    })
    assert service.notify(result["token"]["id"], "called") is None


def test_history_reads_the_delivery_log():
    entries = [{"kind": "called", "tokenId": 2}, {"kind": "served", "tokenId": 1}]
    client = LogRedis(entries)
    assert Notifier(client).history(1) == entries[:1]
    assert client.ranges == [(config.NOTIFICATION_LOG, 0, 0)]
    assert Notifier(client).history() == entries


def test_history_without_redis_is_empty():
    assert Notifier().history() == []
    assert Notifier(LogRedis(fail=True)).history() == []


def test_service_history_is_newest_first(book, service):
    book()
    book()
    history = service.notification_history(limit=1)
    assert [h["tokenNumber"] for h in history] == [2]
