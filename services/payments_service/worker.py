import logging
import time

from sqlalchemy.orm import Session

from config import OUTBOX_BATCH_SIZE, OUTBOX_MAX_ATTEMPTS, OUTBOX_POLL_INTERVAL
from crud import create_notification, get_past_due_invoices
from database import SessionLocal
from events import (
    enqueue_event,
    publish_event,
    INVOICE_SENT,
    INVOICE_PAID,
    INVOICE_OVERDUE,
    INVOICE_REMINDER,
    UPFRONT_PAID,
    FINAL_PAID,
    PROJECT_COMPLETED,
    WITHDRAWAL_REQUESTED,
    WITHDRAWAL_PAID,
    TASK_APPROVED,
)
from idempotency import purge_expired
from invoices import mark_overdue
from locks import entity_lock
from models import InvoiceStatus, OutboxEvent, OutboxStatus, utcnow

logger = logging.getLogger(__name__)


def _money(data: dict) -> str:
    return f"{data.get('amount', 0):.2f} {data.get('currency', '')}".strip()


def _project(data: dict) -> str:
    return data.get("project_title") or f"Project #{data.get('project_id')}"


def process_event(db: Session, event_type: str, data: dict):
    """Turn one domain event into user notifications."""
    if event_type == INVOICE_SENT:
        if data.get("commissioner_id"):
            create_notification(
                db,
                user_id=data["commissioner_id"],
                type="invoice_received",
                title="New invoice",
                message=f"Invoice {data.get('invoice_number')} for {_money(data)} is waiting for you",
                data=data
            )

    elif event_type == INVOICE_PAID:
        if data.get("freelancer_id"):
            create_notification(
                db,
                user_id=data["freelancer_id"],
                type="invoice_paid",
                title="Invoice paid",
                message=f"Invoice {data.get('invoice_number')} was paid: {_money(data)} added to your wallet",
                data=data
            )
        if data.get("commissioner_id"):
            create_notification(
                db,
                user_id=data["commissioner_id"],
                type="payment_sent",
                title="Payment sent",
                message=f"You paid invoice {data.get('invoice_number')} ({_money(data)})",
                data=data
            )

    elif event_type == INVOICE_REMINDER:
        if data.get("commissioner_id"):
            overdue = data.get("is_overdue")
            create_notification(
                db,
                user_id=data["commissioner_id"],
                type="invoice_overdue_reminder" if overdue else "invoice_reminder",
                title="Overdue invoice reminder" if overdue else "Invoice reminder",
                message=f"Reminder: {'overdue ' if overdue else ''}invoice {data.get('invoice_number')} "
                        f"for {_money(data)} is waiting for payment",
                data=data
            )

    elif event_type == INVOICE_OVERDUE:
        for user_id in (data.get("commissioner_id"), data.get("freelancer_id")):
            if user_id:
                create_notification(
                    db,
                    user_id=user_id,
                    type="invoice_overdue",
                    title="Invoice overdue",
                    message=f"Invoice {data.get('invoice_number')} ({_money(data)}) is past its due date",
                    data=data
                )

    elif event_type == UPFRONT_PAID:
        if data.get("freelancer_id"):
            create_notification(
                db,
                user_id=data["freelancer_id"],
                type="upfront_paid",
                title="Upfront payment received",
                message=f"{_project(data)} has started, upfront payment of {_money(data)} received",
                data=data
            )

    elif event_type == FINAL_PAID:
        if data.get("freelancer_id"):
            create_notification(
                db,
                user_id=data["freelancer_id"],
                type="final_paid",
                title="Final payment received",
                message=f"Final payment of {_money(data)} for {_project(data)} received",
                data=data
            )

    elif event_type == PROJECT_COMPLETED:
        # Notify both commissioner and freelancer
        for user_id in (data.get("commissioner_id"), data.get("freelancer_id")):
            if user_id:
                create_notification(
                    db,
                    user_id=user_id,
                    type="project_completed",
                    title="Project completed",
                    message=f"{_project(data)} has been completed",
                    data=data
                )

    elif event_type == TASK_APPROVED:
        if data.get("freelancer_id"):
            create_notification(
                db,
                user_id=data["freelancer_id"],
                type="task_approved",
                title="Task approved",
                message=f"Task '{data.get('task_title')}' in {_project(data)} was approved",
                data=data
            )

    elif event_type == WITHDRAWAL_REQUESTED:
        create_notification(
            db,
            user_id=data["user_id"],
            type="withdrawal_requested",
            title="Withdrawal requested",
            message=f"Withdrawal of {_money(data)} is being processed",
            data=data
        )

    elif event_type == WITHDRAWAL_PAID:
        create_notification(
            db,
            user_id=data["user_id"],
            type="withdrawal_paid",
            title="Withdrawal completed",
            message=f"{_money(data)} has been sent to your account",
            data=data
        )

    else:
        logger.debug("No notification mapping for %s", event_type)


def _record_failure(db: Session, event_id: int, exc: Exception):
    event = db.get(OutboxEvent, event_id)
    event.attempts += 1
    event.last_error = repr(exc)
    if event.attempts >= OUTBOX_MAX_ATTEMPTS:
        event.status = OutboxStatus.FAILED
        logger.error("Giving up on outbox event %s (%s): %s", event.id, event.event_type, exc)
    else:
        logger.warning("Outbox event %s (%s) failed, attempt %s: %s",
                       event.id, event.event_type, event.attempts, exc)
    db.commit()


def dispatch_pending(db: Session = None, limit: int = OUTBOX_BATCH_SIZE) -> int:
    """Deliver pending outbox events. Returns the number delivered.

    Notifications are stored and committed before the broker publish, so a
    RabbitMQ outage only delays the published copy. A failing event is retried
    on the next pass until ``OUTBOX_MAX_ATTEMPTS``; payments are never affected
    by delivery failures.
    """
    owns_session = db is None
    db = db or SessionLocal()
    delivered = 0
    try:
        events = db.query(OutboxEvent).filter(
            OutboxEvent.status == OutboxStatus.PENDING
        ).order_by(OutboxEvent.id).limit(limit).all()

        for event in events:
            event_id = event.id
            try:
                if event.notified_at is None:
                    process_event(db, event.event_type, event.payload or {})
                    event.notified_at = utcnow()
                    db.commit()
                publish_event(event.event_type, event.payload or {})
            except Exception as exc:
                db.rollback()
                _record_failure(db, event_id, exc)
                continue
            event.attempts += 1
            event.status = OutboxStatus.DELIVERED
            event.delivered_at = utcnow()
            db.commit()
            delivered += 1
    finally:
        if owns_session:
            db.close()
    return delivered


def mark_overdue_invoices(db: Session, now=None) -> int:
    """Flag ``sent`` invoices whose due date has passed and notify both parties."""
    now = now or utcnow()
    marked = 0
    for invoice in get_past_due_invoices(db, now):
        with entity_lock("invoice", invoice.invoice_number):
            db.refresh(invoice)
            if invoice.status != InvoiceStatus.SENT or not mark_overdue(db, invoice, now):
                continue
            enqueue_event(db, INVOICE_OVERDUE, {
                "invoice_number": invoice.invoice_number,
                "project_id": invoice.project_id,
                "freelancer_id": invoice.freelancer_id,
                "commissioner_id": invoice.commissioner_id,
                "amount": invoice.total_amount,
                "currency": invoice.currency,
                "due_date": invoice.due_date.isoformat(),
            })
            db.commit()
            marked += 1
    if marked:
        logger.info("Marked %s invoice(s) overdue", marked)
    return marked


def start_worker():
    logger.info("Outbox worker started. Polling every %ss...", OUTBOX_POLL_INTERVAL)
    while True:
        db = SessionLocal()
        try:
            mark_overdue_invoices(db)
            dispatch_pending(db)
            purge_expired(db)
        except Exception:
            logger.exception("Outbox dispatch pass failed")
        finally:
            db.close()
        time.sleep(OUTBOX_POLL_INTERVAL)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    start_worker()
