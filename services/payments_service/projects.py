import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from fastapi import status
from sqlalchemy.orm import Session

from audit import log_project_transition, SUBSYSTEM_INVOICES
from auth import Account, assert_ownership, require_user_type
from config import DEFAULT_CURRENCY, UPFRONT_PERCENTAGE
from crud import get_invoice_by_number, get_milestone, get_project, get_task, get_tasks
from errors import ApiError, ConflictError, ErrorCode, ForbiddenError, InvalidInputError, NotFoundError
from events import enqueue_event, INVOICE_REMINDER, INVOICE_SENT, TASK_APPROVED
from invoices import (
    create_manual_invoice,
    create_milestone_invoice,
    mark_overdue,
    reminder_cooldown_hours,
    transition,
)
from ledger import validate_currency
from locks import entity_lock
from models import (
    Invoice,
    InvoiceStatus,
    InvoicingMethod,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
    UserType,
    utcnow,
)

logger = logging.getLogger(__name__)


def load_project(db: Session, project_id: int, for_update: bool = False) -> Project:
    project = get_project(db, project_id, for_update=for_update)
    if not project:
        raise NotFoundError(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found")
    return project


def load_task(db: Session, project: Project, task_id: int) -> Task:
    task = get_task(db, project.id, task_id)
    if not task:
        raise NotFoundError(ErrorCode.TASK_NOT_FOUND, f"Task {task_id} not found in project {project.id}")
    return task


def load_participant_project(db: Session, account: Account, project_id: int) -> Project:
    project = load_project(db, project_id)
    if account.user_type != UserType.ADMIN and account.id not in (project.commissioner_id, project.freelancer_id):
        raise ForbiddenError("You do not have access to this project")
    return project


def create_project(db: Session, account: Account, title: str, invoicing_method: InvoicingMethod,
                   total_budget: float, currency: Optional[str] = None, commissioner_name: Optional[str] = None,
                   freelancer_id: Optional[int] = None) -> Project:
    require_user_type(account, UserType.COMMISSIONER)
    if total_budget is None or total_budget <= 0:
        raise InvalidInputError("Total budget must be positive")
    project = Project(
        commissioner_id=account.id,
        commissioner_name=commissioner_name,
        freelancer_id=freelancer_id,
        title=title,
        invoicing_method=invoicing_method,
        total_budget=total_budget,
        currency=validate_currency(currency, DEFAULT_CURRENCY),
        status=ProjectStatus.PENDING,
        upfront_percentage=UPFRONT_PERCENTAGE if invoicing_method == InvoicingMethod.COMPLETION else None,
    )
    db.add(project)
    db.flush()
    log_project_transition(db, project.id, None, ProjectStatus.PENDING.value, account.id,
                           {"invoicingMethod": invoicing_method.value, "totalBudget": total_budget})
    db.commit()
    db.refresh(project)
    return project


def activate_project(db: Session, account: Account, project_id: int, freelancer_id: Optional[int] = None) -> Project:
    project = load_project(db, project_id, for_update=True)
    assert_ownership(account, project.commissioner_id, "project")
    if project.status != ProjectStatus.PENDING:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Project {project_id} is already {project.status.value}")
    if freelancer_id is not None:
        project.freelancer_id = freelancer_id
    if project.freelancer_id is None:
        raise InvalidInputError("A freelancer must be assigned to activate the project")
    project.status = ProjectStatus.ACTIVE
    project.activated_at = utcnow()
    log_project_transition(db, project.id, ProjectStatus.PENDING.value, ProjectStatus.ACTIVE.value, account.id,
                           {"freelancerId": project.freelancer_id})
    db.commit()
    db.refresh(project)
    return project


def add_milestone(db: Session, account: Account, project_id: int, title: str, rate: float) -> Milestone:
    project = load_project(db, project_id)
    assert_ownership(account, project.commissioner_id, "project")
    if project.invoicing_method != InvoicingMethod.MILESTONE:
        raise InvalidInputError(f"Project {project_id} is not milestone-based")
    milestone = Milestone(project_id=project.id, title=title, rate=rate, status=MilestoneStatus.PENDING)
    db.add(milestone)
    db.commit()
    db.refresh(milestone)
    return milestone


def add_task(db: Session, account: Account, project_id: int, title: str, milestone_id: Optional[int] = None,
             status: Optional[str] = None) -> Task:
    project = load_project(db, project_id)
    assert_ownership(account, project.commissioner_id, "project")
    if milestone_id is not None and not get_milestone(db, project.id, milestone_id):
        raise NotFoundError(ErrorCode.MILESTONE_NOT_FOUND, f"Milestone {milestone_id} not found")
    try:
        task_status = TaskStatus.from_string(status) if status else TaskStatus.TODO
    except ValueError:
        raise InvalidInputError(f"Unknown task status: {status}")
    task = Task(project_id=project.id, milestone_id=milestone_id, title=title, status=task_status)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def submit_task(db: Session, account: Account, project_id: int, task_id: int) -> Task:
    """Freelancer submits (or resubmits) a task for review."""
    project = load_project(db, project_id)
    assert_ownership(account, project.freelancer_id, "project")
    task = load_task(db, project, task_id)
    if task.approved:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Task {task_id} is already approved")
    if task.submitted_at is not None:
        task.version = (task.version or 1) + 1
    task.status = TaskStatus.REVIEW
    task.completed = True
    task.submitted_at = utcnow()
    db.commit()
    db.refresh(task)
    return task


def approve_task(db: Session, account: Account, project_id: int, task_id: int) -> tuple[Task, Optional[Invoice]]:
    """Commissioner approves a task. Approving the last task of a milestone invoices it."""
    project = load_project(db, project_id)
    assert_ownership(account, project.commissioner_id, "project")
    task = load_task(db, project, task_id)
    if task.approved:
        return task, None

    task.approved = True
    task.completed = True
    task.status = TaskStatus.DONE
    task.approved_at = utcnow()
    enqueue_event(db, TASK_APPROVED, {
        "project_id": project.id,
        "project_title": project.title,
        "task_id": task.id,
        "task_title": task.title,
        "freelancer_id": project.freelancer_id,
    })

    invoice = None
    if project.invoicing_method == InvoicingMethod.MILESTONE and task.milestone_id:
        milestone = get_milestone(db, project.id, task.milestone_id)
        milestone_tasks = [t for t in get_tasks(db, project.id) if t.milestone_id == task.milestone_id]
        if milestone and milestone.status == MilestoneStatus.PENDING and all(t.approved for t in milestone_tasks):
            milestone.status = MilestoneStatus.APPROVED
            if project.freelancer_id is not None:
                invoice, _ = create_milestone_invoice(db, project, milestone)
    db.commit()
    db.refresh(task)
    return task, invoice


def milestone_invoice(db: Session, account: Account, project_id: int, milestone_id: int) -> Invoice:
    require_user_type(account, UserType.FREELANCER)
    project = load_project(db, project_id, for_update=True)
    assert_ownership(account, project.freelancer_id, "project")
    milestone = get_milestone(db, project.id, milestone_id)
    if not milestone:
        raise NotFoundError(ErrorCode.MILESTONE_NOT_FOUND, f"Milestone {milestone_id} not found")
    invoice, created = create_milestone_invoice(db, project, milestone)
    db.commit()
    if created:
        logger.info("Milestone invoice %s created for project %s", invoice.invoice_number, project.id)
    return invoice


def manual_invoice(db: Session, account: Account, project_id: int, task_id: int) -> Invoice:
    require_user_type(account, UserType.FREELANCER)
    project = load_project(db, project_id, for_update=True)
    assert_ownership(account, project.freelancer_id, "project")
    if project.status != ProjectStatus.ACTIVE:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Project {project_id} is {project.status.value}")
    task = load_task(db, project, task_id)
    invoice, created = create_manual_invoice(db, project, task)
    db.commit()
    if created:
        logger.info("Manual invoice %s created for task %s", invoice.invoice_number, task.id)
    return invoice


def send_invoice(db: Session, account: Account, invoice_number: str) -> Invoice:
    invoice = get_invoice_by_number(db, invoice_number, for_update=True)
    if not invoice:
        raise NotFoundError(ErrorCode.INVOICE_NOT_FOUND, f"Invoice {invoice_number} not found")
    transition(db, invoice, InvoiceStatus.DRAFT, InvoiceStatus.SENT, account, SUBSYSTEM_INVOICES)
    enqueue_event(db, INVOICE_SENT, {
        "invoice_number": invoice.invoice_number,
        "project_id": invoice.project_id,
        "freelancer_id": invoice.freelancer_id,
        "commissioner_id": invoice.commissioner_id,
        "amount": invoice.total_amount,
        "currency": invoice.currency,
    })
    db.commit()
    db.refresh(invoice)
    return invoice


def send_reminder(db: Session, account: Account, invoice_number: str,
                  now: Optional[datetime] = None) -> tuple[Invoice, dict]:
    """Freelancer nudges the commissioner about a ``sent`` or ``overdue`` invoice."""
    now = now or utcnow()
    with entity_lock("invoice", invoice_number):
        invoice = get_invoice_by_number(db, invoice_number, for_update=True)
        if not invoice:
            raise NotFoundError(ErrorCode.INVOICE_NOT_FOUND, f"Invoice {invoice_number} not found")
        if account.id != invoice.freelancer_id:
            raise ForbiddenError("Only the invoice's freelancer can send reminders")
        if invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
            raise ConflictError(ErrorCode.INVALID_STATUS,
                                f"Cannot send a reminder for an invoice that is {invoice.status.value}")

        reminders = list(invoice.reminders or [])
        if invoice.last_reminder_at is not None:
            cooldown = reminder_cooldown_hours(len(reminders))
            elapsed = (now - invoice.last_reminder_at).total_seconds() / 3600
            if elapsed < cooldown:
                raise ApiError(
                    ErrorCode.REMINDER_TOO_SOON,
                    f"Must wait {cooldown} hours between reminders. "
                    f"{math.ceil(cooldown - elapsed)} hours remaining.",
                    status.HTTP_429_TOO_MANY_REQUESTS,
                )

        overdue = mark_overdue(db, invoice, now)
        reminders.append({"sentAt": now.isoformat(), "sentBy": account.id, "isOverdue": overdue})
        invoice.reminders = reminders
        invoice.last_reminder_at = now
        enqueue_event(db, INVOICE_REMINDER, {
            "invoice_number": invoice.invoice_number,
            "project_id": invoice.project_id,
            "freelancer_id": invoice.freelancer_id,
            "commissioner_id": invoice.commissioner_id,
            "amount": invoice.total_amount,
            "currency": invoice.currency,
            "reminder_count": len(reminders),
            "is_overdue": overdue,
        })
        db.commit()
        db.refresh(invoice)

    next_allowed = now + timedelta(hours=reminder_cooldown_hours(len(reminders)))
    logger.info("Reminder %s sent for invoice %s (overdue=%s)", len(reminders), invoice_number, overdue)
    return invoice, {
        "reminderCount": len(reminders),
        "isOverdue": overdue,
        "nextReminderAllowedAt": next_allowed.isoformat(),
    }


def load_visible_invoice(db: Session, account: Account, invoice_number: str) -> Invoice:
    invoice = get_invoice_by_number(db, invoice_number)
    if not invoice:
        raise NotFoundError(ErrorCode.INVOICE_NOT_FOUND, f"Invoice {invoice_number} not found")
    if account.user_type != UserType.ADMIN and account.id not in (invoice.freelancer_id, invoice.commissioner_id):
        raise ForbiddenError("You do not have access to this invoice")
    return invoice
