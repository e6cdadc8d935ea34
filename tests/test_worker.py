# tests/test_worker.py
import json
from types import SimpleNamespace

from twilio.base.exceptions import TwilioException

from clinic_queue import config
from clinic_queue.whatsapp_worker import NotificationWorker, render_message


class ListRedis:
    def __init__(self):
        self.lists = {}

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def llen(self, key):
        return len(self.lists.get(key, []))


class FakeMessages:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def create(self, from_, body, to):
        if self.fail:
            raise TwilioException("invalid number")
        self.sent.append({"from_": from_, "body": body, "to": to})
        return SimpleNamespace(sid=f"SM{len(self.sent)}")


def _notification(**values):
    data = {
        "tokenId": 4,
        "messageKind": "booking_confirmed",
        "tokenNumber": 4,
        "bookingDate": "2026-10-19",
        "phone": "9876500004",
        "channels": ["sms", "whatsapp"],
        "context": {"estimatedTime": "09:30 AM", "waitAhead": 3},
    }
    data.update(values)
    return data


def test_render_booking_confirmation():
    message = render_message(_notification())
    assert message == (
        "Your token #4 is confirmed for 2026-10-19. "
        "Estimated time: 09:30 AM. Wait ahead: 3 patients."
    )


def test_render_fills_missing_context():
    message = render_message(_notification(messageKind="cancelled", context={}))
    assert message == "Token #4: Your appointment has been cancelled. Reason: --."


def test_render_unknown_kind():
    assert render_message(_notification(messageKind="birthday")) is None


def test_simulated_send_is_logged():
    redis_client = ListRedis()
    worker = NotificationWorker(redis_client=redis_client)

    assert worker.handle(_notification()) is True

    (entry,) = redis_client.lists[config.NOTIFICATION_LOG]
    logged = json.loads(entry)
    assert logged["phone"] == "0004"
    assert logged["kind"] == "booking_confirmed"
    assert logged["status"] == "sent"


def test_sends_on_every_opted_in_channel():
    messages = FakeMessages()
    worker = NotificationWorker(redis_client=ListRedis(), twilio_client=SimpleNamespace(messages=messages))

    worker.handle(_notification())

    recipients = [m["to"] for m in messages.sent]
    assert recipients == [f"{config.COUNTRY_CODE}9876500004", f"whatsapp:{config.COUNTRY_CODE}9876500004"]
    assert messages.sent[1]["from_"].startswith("whatsapp:")


def test_failed_send_is_requeued_once():
    redis_client = ListRedis()
    twilio = SimpleNamespace(messages=FakeMessages(fail=True))
    worker = NotificationWorker(redis_client=redis_client, twilio_client=twilio)

    assert worker.handle(_notification(channels=["sms"])) is False
    (raw,) = redis_client.lists[config.NOTIFICATION_QUEUE]
    retry = json.loads(raw)
    assert retry["retry"] is True

    assert worker.handle(retry) is False
    assert redis_client.llen(config.NOTIFICATION_QUEUE) == 1
    assert redis_client.llen(config.NOTIFICATION_LOG) == 0


def test_invalid_notification_is_dropped():
    redis_client = ListRedis()
    worker = NotificationWorker(redis_client=redis_client)
    assert worker.handle(_notification(phone=None)) is True
    assert redis_client.lists == {}


def test_stats():
    redis_client = ListRedis()
    worker = NotificationWorker(redis_client=redis_client)
    worker.handle(_notification())
    stats = worker.get_stats()
    assert stats["queue_length"] == 0
    assert stats["total_sent"] == 1
