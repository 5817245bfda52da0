from datetime import timedelta

import pytest

import worker
from auth import Account
from conftest import COMMISSIONER_ID, FREELANCER_ID, OTHER_FREELANCER_ID
from errors import ApiError, ConflictError, ForbiddenError
from factories import make_invoice, make_project
from models import Invoice, InvoiceStatus, InvoiceType, InvoicingMethod, Notification, UserType, utcnow
from projects import send_reminder

freelancer = Account(id=FREELANCER_ID, user_type=UserType.FREELANCER)


@pytest.fixture
def project(db):
    return make_project(db, 3000, method=InvoicingMethod.MILESTONE)


def sent_invoice(db, project, number="JD-001", due_in=timedelta(days=7), status=InvoiceStatus.SENT):
    return make_invoice(db, project, InvoiceType.MILESTONE, 500.0, status=status, number=number,
                        due_date=utcnow() + due_in)


def notifications(db, user_id):
    return [n.type for n in db.query(Notification).filter(Notification.user_id == user_id).order_by(Notification.id)]


def test_reminder_cooldown_escalates_after_two_reminders(db, project):
    sent_invoice(db, project)
    start = utcnow()

    _, reminder = send_reminder(db, freelancer, "JD-001", now=start)
    assert reminder["reminderCount"] == 1
    assert reminder["nextReminderAllowedAt"] == (start + timedelta(hours=48)).isoformat()

    with pytest.raises(ApiError) as exc:
        send_reminder(db, freelancer, "JD-001", now=start + timedelta(hours=47))
    assert exc.value.code == "REMINDER_TOO_SOON"
    assert exc.value.status_code == 429
    assert "1 hours remaining" in exc.value.message

    second = start + timedelta(hours=48)
    _, reminder = send_reminder(db, freelancer, "JD-001", now=second)
    assert reminder["reminderCount"] == 2
    assert reminder["nextReminderAllowedAt"] == (second + timedelta(hours=72)).isoformat()

    with pytest.raises(ApiError):
        send_reminder(db, freelancer, "JD-001", now=second + timedelta(hours=71))

    invoice, reminder = send_reminder(db, freelancer, "JD-001", now=second + timedelta(hours=72))
    assert reminder["reminderCount"] == 3
    assert len(invoice.reminders) == 3
    assert invoice.last_reminder_at == second + timedelta(hours=72)


def test_reminder_on_past_due_invoice_marks_it_overdue(db, project):
    sent_invoice(db, project, due_in=timedelta(days=-1))

    invoice, reminder = send_reminder(db, freelancer, "JD-001")
    assert reminder["isOverdue"] is True
    assert invoice.status == InvoiceStatus.OVERDUE
    assert invoice.reminders[0]["isOverdue"] is True

    worker.dispatch_pending(db)
    assert notifications(db, COMMISSIONER_ID) == ["invoice_overdue_reminder"]


def test_reminder_requires_sent_or_overdue_invoice(db, project):
    sent_invoice(db, project, status=InvoiceStatus.DRAFT)
    with pytest.raises(ConflictError) as exc:
        send_reminder(db, freelancer, "JD-001")
    assert exc.value.code == "INVALID_STATUS"


def test_only_the_invoice_freelancer_can_remind(db, project):
    sent_invoice(db, project)
    with pytest.raises(ForbiddenError):
        send_reminder(db, Account(id=OTHER_FREELANCER_ID, user_type=UserType.FREELANCER), "JD-001")


def test_remind_endpoint_notifies_commissioner_and_enforces_cooldown(market, client, db, project):
    sent_invoice(db, project)

    data = market.call("POST", "/api/v1/invoices/JD-001/remind", market.freelancer)
    assert data["reminder"]["reminderCount"] == 1
    assert data["reminder"]["isOverdue"] is False
    assert data["invoice"]["status"] == "sent"
    assert len(data["invoice"]["reminders"]) == 1
    assert data["invoice"]["lastReminderAt"] is not None

    inbox = market.call("GET", "/api/v1/notifications", market.commissioner)["notifications"]
    assert [n["type"] for n in inbox] == ["invoice_reminder"]

    response = client.post("/api/v1/invoices/JD-001/remind", headers=market.freelancer)
    assert response.status_code == 429
    assert response.json()["error"]["code"] == "REMINDER_TOO_SOON"


def test_worker_marks_only_past_due_sent_invoices(db, project):
    sent_invoice(db, project, "JD-001", due_in=timedelta(days=-2))
    sent_invoice(db, project, "JD-002", due_in=timedelta(days=3))
    sent_invoice(db, project, "JD-003", due_in=timedelta(days=-2), status=InvoiceStatus.DRAFT)

    assert worker.mark_overdue_invoices(db) == 1
    assert worker.mark_overdue_invoices(db) == 0

    statuses = {i.invoice_number: i.status for i in db.query(Invoice).all()}
    assert statuses == {
        "JD-001": InvoiceStatus.OVERDUE,
        "JD-002": InvoiceStatus.SENT,
        "JD-003": InvoiceStatus.DRAFT,
    }

    worker.dispatch_pending(db)
    assert notifications(db, COMMISSIONER_ID) == ["invoice_overdue"]
    assert notifications(db, FREELANCER_ID) == ["invoice_overdue"]


def test_overdue_invoice_can_still_be_paid(market, db):
    project_id = market.create_project("milestone", 500)["projectId"]
    milestone = market.add_milestone(project_id, "Design", 500)
    task = market.add_task(project_id, "Mockups", milestone["id"])
    market.activate(project_id)
    number = market.approve(project_id, task["id"])["invoice"]["invoiceNumber"]
    market.send(number)

    invoice = db.query(Invoice).filter(Invoice.invoice_number == number).one()
    invoice.due_date = utcnow() - timedelta(days=1)
    db.commit()
    assert worker.mark_overdue_invoices(db) == 1
    assert market.call("GET", f"/api/v1/invoices/{number}", market.freelancer)["invoice"]["status"] == "overdue"

    triggered = market.trigger(number)
    assert triggered["invoice"]["status"] == "processing"
    paid = market.execute(number)
    assert paid["invoice"]["status"] == "paid"
    assert market.wallet()["availableBalance"] == 500.0
