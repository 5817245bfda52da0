import worker
from config import OUTBOX_MAX_ATTEMPTS
from events import enqueue_event, INVOICE_PAID, PROJECT_COMPLETED, WITHDRAWAL_PAID
from models import Notification, OutboxEvent, OutboxStatus


def paid_event(db):
    enqueue_event(db, INVOICE_PAID, {
        "invoice_number": "JD-001",
        "freelancer_id": 20,
        "commissioner_id": 10,
        "amount": 240.0,
        "currency": "USD",
    })
    db.commit()


def test_dispatch_creates_notifications_and_marks_delivered(db):
    paid_event(db)
    enqueue_event(db, PROJECT_COMPLETED, {"project_id": 1, "freelancer_id": 20, "commissioner_id": 10})
    db.commit()

    assert worker.dispatch_pending(db) == 2

    notifications = db.query(Notification).order_by(Notification.id).all()
    assert [(n.user_id, n.type) for n in notifications] == [
        (20, "invoice_paid"), (10, "payment_sent"), (10, "project_completed"), (20, "project_completed"),
    ]
    assert "240.00 USD" in notifications[0].message
    events = db.query(OutboxEvent).all()
    assert all(event.status == OutboxStatus.DELIVERED for event in events)
    assert all(event.delivered_at is not None for event in events)


def test_delivered_events_are_not_sent_twice(db):
    paid_event(db)
    worker.dispatch_pending(db)
    assert worker.dispatch_pending(db) == 0
    assert db.query(Notification).count() == 2


def test_broker_outage_keeps_notifications_and_abandons_publish(db, monkeypatch):
    def broken_publish(event_type, data):
        raise ConnectionError("broker down")

    monkeypatch.setattr(worker, "publish_event", broken_publish)
    paid_event(db)

    for _ in range(OUTBOX_MAX_ATTEMPTS):
        assert worker.dispatch_pending(db) == 0

    event = db.query(OutboxEvent).one()
    assert event.status == OutboxStatus.FAILED
    assert event.attempts == OUTBOX_MAX_ATTEMPTS
    assert "broker down" in event.last_error
    assert event.notified_at is not None
    assert db.query(Notification).count() == 2


def test_failed_event_does_not_block_others(db, monkeypatch):
    real_publish = worker.publish_event

    def flaky_publish(event_type, data):
        if event_type == INVOICE_PAID:
            raise ConnectionError("broker down")
        real_publish(event_type, data)

    monkeypatch.setattr(worker, "publish_event", flaky_publish)
    paid_event(db)
    enqueue_event(db, WITHDRAWAL_PAID, {"withdrawal_id": "WD-1", "user_id": 20, "amount": 50.0, "currency": "USD"})
    db.commit()

    assert worker.dispatch_pending(db) == 1
    types = {n.type for n in db.query(Notification).all()}
    assert types == {"invoice_paid", "payment_sent", "withdrawal_paid"}


def test_notifications_are_not_repeated_when_publish_is_retried(db, monkeypatch):
    calls = []

    def publish_second_time(event_type, data):
        calls.append(event_type)
        if len(calls) == 1:
            raise ConnectionError("broker down")

    monkeypatch.setattr(worker, "publish_event", publish_second_time)
    paid_event(db)

    assert worker.dispatch_pending(db) == 0
    assert db.query(Notification).count() == 2
    assert worker.dispatch_pending(db) == 1

    event = db.query(OutboxEvent).one()
    assert event.status == OutboxStatus.DELIVERED
    assert event.attempts == 2
    assert calls == [INVOICE_PAID, INVOICE_PAID]
    assert db.query(Notification).count() == 2


def test_notification_failure_is_retried(db, monkeypatch):
    real_process = worker.process_event
    calls = []

    def process_second_time(session, event_type, data):
        calls.append(event_type)
        if len(calls) == 1:
            raise RuntimeError("notifications table locked")
        real_process(session, event_type, data)

    monkeypatch.setattr(worker, "process_event", process_second_time)
    paid_event(db)

    assert worker.dispatch_pending(db) == 0
    assert db.query(OutboxEvent).one().status == OutboxStatus.PENDING
    assert worker.dispatch_pending(db) == 1
    assert db.query(Notification).count() == 2
