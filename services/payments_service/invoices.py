"""Invoice construction and the invoice status machine.

All invoice numbers come from ``generate_invoice_number`` and all status
changes go through ``transition``.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from audit import log_invoice_transition, log_project_transition, SUBSYSTEM_INVOICES
from auth import Account
from calculations import (
    calculate_upfront_amount,
    calculate_manual_invoice_amount,
    calculate_remaining_budget,
    all_tasks_approved,
)
from config import (
    BUDGET_EPSILON,
    INVOICE_DUE_DAYS,
    PLATFORM_FEE_RATE,
    REMINDER_COOLDOWN_HOURS,
    REMINDER_ESCALATED_COOLDOWN_HOURS,
    REMINDER_ESCALATION_AFTER,
    UPFRONT_PERCENTAGE,
)
from crud import find_invoice, get_tasks, next_invoice_sequence
from errors import ApiError, ConflictError, ErrorCode, ForbiddenError, InvalidInputError
from ledger import round_money
from models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    InvoicingMethod,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    Task,
    utcnow,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    (InvoiceStatus.DRAFT, InvoiceStatus.SENT),
    (InvoiceStatus.SENT, InvoiceStatus.PROCESSING),
    (InvoiceStatus.SENT, InvoiceStatus.OVERDUE),
    (InvoiceStatus.OVERDUE, InvoiceStatus.PROCESSING),
    (InvoiceStatus.PROCESSING, InvoiceStatus.PAID),
}

# Freelancers send invoices and request payment, commissioners pay
_FREELANCER_TARGETS = {InvoiceStatus.SENT, InvoiceStatus.PROCESSING}
_COMMISSIONER_TARGETS = {InvoiceStatus.PAID}


def commissioner_initials(project: Project) -> str:
    name = (project.commissioner_name or "").strip()
    initials = "".join(word[0].upper() for word in name.split() if word[0].isalnum())
    return initials or f"C{project.commissioner_id}"


def generate_invoice_number(db: Session, project: Project) -> str:
    """``<commissioner initials>-<sequence for those initials>``, e.g. ``JD-007``."""
    prefix = commissioner_initials(project)
    return f"{prefix}-{next_invoice_sequence(db, prefix):03d}"


def payment_details(amount: float) -> dict:
    platform_fee = round_money(amount * PLATFORM_FEE_RATE)
    return {
        "platformFee": platform_fee,
        "freelancerAmount": round_money(amount - platform_fee),
    }


def _require_freelancer(project: Project):
    if project.freelancer_id is None:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Project {project.id} has no assigned freelancer")


def _build_invoice(db: Session, project: Project, invoice_type: InvoiceType, amount: float, description: str,
                   status: InvoiceStatus = InvoiceStatus.DRAFT, task_id: Optional[int] = None,
                   milestone_id: Optional[int] = None) -> Invoice:
    _require_freelancer(project)
    if amount <= 0:
        raise InvalidInputError("Invoice amount must be positive")
    now = utcnow()
    invoice = Invoice(
        invoice_number=generate_invoice_number(db, project),
        project_id=project.id,
        freelancer_id=project.freelancer_id,
        commissioner_id=project.commissioner_id,
        task_id=task_id,
        milestone_id=milestone_id,
        invoice_type=invoice_type,
        status=status,
        total_amount=amount,
        currency=project.currency,
        line_items=[{"description": description, "rate": amount}],
        payment_details=payment_details(amount),
        issue_date=now,
        due_date=now + timedelta(days=INVOICE_DUE_DAYS),
    )
    db.add(invoice)
    db.flush()
    log_invoice_transition(db, invoice.invoice_number, None, status.value, None, SUBSYSTEM_INVOICES,
                           {"projectId": project.id, "invoiceType": invoice_type.value, "amount": amount})
    return invoice


def _require_method(project: Project, method: InvoicingMethod):
    if project.invoicing_method != method:
        raise InvalidInputError(f"Project {project.id} is not {method.value}-based")


def create_milestone_invoice(db: Session, project: Project, milestone: Milestone) -> tuple[Invoice, bool]:
    """Draft invoice for an approved milestone. Returns ``(invoice, created)``."""
    _require_method(project, InvoicingMethod.MILESTONE)
    existing = find_invoice(db, project.id, InvoiceType.MILESTONE, milestone_id=milestone.id)
    if existing:
        return existing, False
    if milestone.status != MilestoneStatus.APPROVED:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Milestone {milestone.id} has not been approved")
    invoice = _build_invoice(db, project, InvoiceType.MILESTONE, round_money(milestone.rate), milestone.title,
                             milestone_id=milestone.id)
    milestone.status = MilestoneStatus.INVOICED
    return invoice, True


def create_upfront_invoice(db: Session, project: Project) -> tuple[Invoice, bool]:
    """Upfront invoice for a completion project, created directly in ``processing``."""
    _require_method(project, InvoicingMethod.COMPLETION)
    existing = find_invoice(db, project.id, InvoiceType.COMPLETION_UPFRONT)
    if existing:
        return existing, False
    amount = calculate_upfront_amount(project.total_budget)
    invoice = _build_invoice(db, project, InvoiceType.COMPLETION_UPFRONT, amount,
                             f"{UPFRONT_PERCENTAGE:g}% Upfront Payment", status=InvoiceStatus.PROCESSING)
    return invoice, True


def create_manual_invoice(db: Session, project: Project, task: Task) -> tuple[Invoice, bool]:
    """Pro-rata invoice for one approved task of a completion project."""
    _require_method(project, InvoicingMethod.COMPLETION)
    existing = find_invoice(db, project.id, InvoiceType.COMPLETION_MANUAL, task_id=task.id)
    if existing:
        return existing, False
    if not task.approved:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Task {task.id} must be approved before invoicing")
    if find_invoice(db, project.id, InvoiceType.COMPLETION_FINAL):
        raise ConflictError(ErrorCode.ALREADY_PROCESSED, "Final invoice already exists for this project")
    total_tasks = len(get_tasks(db, project.id))
    amount = calculate_manual_invoice_amount(project.total_budget, total_tasks)
    invoice = _build_invoice(db, project, InvoiceType.COMPLETION_MANUAL, amount,
                             f"Task payment: {task.title}", task_id=task.id)
    return invoice, True


def create_final_invoice(db: Session, project: Project) -> Optional[Invoice]:
    """Closing invoice for the remaining budget.

    Returns None when nothing is left to pay; the project is completed instead.
    """
    _require_method(project, InvoicingMethod.COMPLETION)
    if find_invoice(db, project.id, InvoiceType.COMPLETION_FINAL):
        raise ConflictError(ErrorCode.ALREADY_PROCESSED, "Final payment already processed for this project")
    tasks = get_tasks(db, project.id)
    if not all_tasks_approved(tasks):
        approved = sum(1 for task in tasks if task.approved)
        raise ApiError(ErrorCode.PAYMENT_NOT_ELIGIBLE,
                       f"All tasks must be approved before final payment ({approved}/{len(tasks)})", 409)

    remaining = calculate_remaining_budget(db, project)
    if remaining <= BUDGET_EPSILON:
        complete_project(db, project, None, reason="no_remaining_budget")
        return None
    return _build_invoice(db, project, InvoiceType.COMPLETION_FINAL, remaining,
                          "Final completion payment (remaining budget)", status=InvoiceStatus.PROCESSING)


def complete_project(db: Session, project: Project, actor_id: Optional[int], reason: str):
    previous = project.status.value
    project.status = ProjectStatus.COMPLETED
    project.completed_at = utcnow()
    log_project_transition(db, project.id, previous, ProjectStatus.COMPLETED.value, actor_id, {"reason": reason})


def authorize_transition(invoice: Invoice, to_status: InvoiceStatus, actor: Account):
    if to_status in _FREELANCER_TARGETS and actor.id != invoice.freelancer_id:
        raise ForbiddenError("Only the invoice's freelancer can perform this action")
    if to_status in _COMMISSIONER_TARGETS and actor.id != invoice.commissioner_id:
        raise ForbiddenError("Only the invoice's commissioner can pay this invoice")


def transition(db: Session, invoice: Invoice, from_status: InvoiceStatus, to_status: InvoiceStatus,
               actor: Optional[Account], subsystem: str, details: Optional[dict] = None) -> Invoice:
    """Move ``invoice`` along one allowed edge; anything else leaves it untouched."""
    if actor is not None:
        authorize_transition(invoice, to_status, actor)
    if invoice.status != from_status or (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise ConflictError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Cannot move invoice {invoice.invoice_number} from '{invoice.status.value}' to '{to_status.value}'",
        )
    invoice.status = to_status
    invoice.updated_at = utcnow()
    if to_status == InvoiceStatus.PAID:
        invoice.paid_date = invoice.updated_at
    log_invoice_transition(db, invoice.invoice_number, from_status.value, to_status.value,
                           actor.id if actor else None, subsystem, details)
    return invoice


def is_overdue(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    if invoice.due_date is None or invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
        return False
    return (now or utcnow()) > invoice.due_date


def mark_overdue(db: Session, invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """Move a past-due ``sent`` invoice to ``overdue``. Returns whether it is overdue."""
    if not is_overdue(invoice, now):
        return False
    if invoice.status == InvoiceStatus.SENT:
        transition(db, invoice, InvoiceStatus.SENT, InvoiceStatus.OVERDUE, None, SUBSYSTEM_INVOICES,
                   {"dueDate": invoice.due_date.isoformat()})
    return True


def reminder_cooldown_hours(reminders_sent: int) -> int:
    if reminders_sent < REMINDER_ESCALATION_AFTER:
        return REMINDER_COOLDOWN_HOURS
    return REMINDER_ESCALATED_COOLDOWN_HOURS
