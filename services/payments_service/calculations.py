"""Completion-billing arithmetic and the budget integrity validator.

A completion project is paid as an upfront share (``UPFRONT_PERCENTAGE`` of
the budget), optional per-task manual invoices sliced from the remaining
share, and a final invoice for whatever is left. Upfront + manual + final
must always add up to the total budget.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from config import UPFRONT_PERCENTAGE, BUDGET_EPSILON
from crud import get_invoices, get_tasks
from errors import InvalidInputError, ConflictError, ErrorCode
from ledger import round_money
from models import Project, Invoice, InvoiceType, InvoiceStatus, InvoicingMethod

logger = logging.getLogger(__name__)


def upfront_rate() -> float:
    return UPFRONT_PERCENTAGE / 100.0


def remaining_rate() -> float:
    return 1.0 - upfront_rate()


def calculate_upfront_amount(total_budget: float) -> float:
    if total_budget is None or total_budget <= 0:
        raise InvalidInputError("Total budget must be positive")
    return round_money(total_budget * upfront_rate())


def calculate_manual_invoice_amount(total_budget: float, total_tasks: int) -> float:
    """Remaining share of the budget split equally across all tasks."""
    if total_budget is None or total_budget <= 0:
        raise InvalidInputError("Total budget must be positive")
    if total_tasks is None or total_tasks <= 0:
        raise InvalidInputError("Total tasks must be positive")
    return round_money(total_budget * remaining_rate() / total_tasks)


@dataclass
class BudgetSnapshot:
    total_budget: float
    upfront_amount: float = 0.0
    upfront_paid: bool = False
    upfront_count: int = 0
    manual_paid_total: float = 0.0
    manual_paid_count: int = 0
    final_paid_total: float = 0.0
    final_count: int = 0
    final_paid: bool = False

    @property
    def total_paid(self) -> float:
        paid_upfront = self.upfront_amount if self.upfront_paid else 0.0
        return round_money(paid_upfront + self.manual_paid_total + self.final_paid_total)

    @property
    def remaining(self) -> float:
        """Total minus the committed upfront and everything paid since."""
        return round_money(self.total_budget - self.upfront_amount - self.manual_paid_total - self.final_paid_total)


def _live(invoices: list[Invoice]) -> list[Invoice]:
    return [inv for inv in invoices if inv.status != InvoiceStatus.CANCELLED]


def budget_snapshot(db: Session, project: Project) -> BudgetSnapshot:
    invoices = _live(get_invoices(db, project_id=project.id))
    upfront = [inv for inv in invoices if inv.invoice_type == InvoiceType.COMPLETION_UPFRONT]
    manual_paid = [inv for inv in invoices
                   if inv.invoice_type == InvoiceType.COMPLETION_MANUAL and inv.status == InvoiceStatus.PAID]
    final = [inv for inv in invoices if inv.invoice_type == InvoiceType.COMPLETION_FINAL]
    final_paid = [inv for inv in final if inv.status == InvoiceStatus.PAID]

    return BudgetSnapshot(
        total_budget=project.total_budget,
        upfront_amount=round_money(sum(inv.total_amount for inv in upfront)),
        upfront_paid=any(inv.status == InvoiceStatus.PAID for inv in upfront),
        upfront_count=len(upfront),
        manual_paid_total=round_money(sum(inv.total_amount for inv in manual_paid)),
        manual_paid_count=len(manual_paid),
        final_paid_total=round_money(sum(inv.total_amount for inv in final_paid)),
        final_count=len(final),
        final_paid=bool(final_paid),
    )


def calculate_remaining_budget(db: Session, project: Project) -> float:
    if project.total_budget is None or project.total_budget <= 0:
        raise InvalidInputError("Total budget must be positive")
    snapshot = budget_snapshot(db, project)
    logger.info(
        "Project %s: budget %.2f, upfront %.2f, manual paid %.2f, remaining %.2f",
        project.id, snapshot.total_budget, snapshot.upfront_amount, snapshot.manual_paid_total, snapshot.remaining,
    )
    return snapshot.remaining


@dataclass
class IntegrityReport:
    is_valid: bool
    remaining_budget: float
    proposed_amount: float
    errors: list[str] = field(default_factory=list)


def check_budget_integrity(db: Session, project: Project, invoice_type: InvoiceType, amount: float) -> IntegrityReport:
    """Recompute the remaining budget from invoices and compare it with the amount about to be paid."""
    errors = []
    if project.invoicing_method != InvoicingMethod.COMPLETION:
        errors.append(f"Project {project.id} is not a completion project")
        return IntegrityReport(False, 0.0, amount, errors)

    snapshot = budget_snapshot(db, project)
    remaining = snapshot.remaining

    if amount is None or amount <= 0:
        errors.append("Payment amount must be positive")
    if snapshot.upfront_count > 1:
        errors.append(f"Found {snapshot.upfront_count} upfront invoices, expected at most 1")
    if snapshot.final_count > 1:
        errors.append(f"Found {snapshot.final_count} final invoices, expected at most 1")
    if snapshot.final_paid:
        errors.append("Final payment already processed")
    if snapshot.total_paid > project.total_budget + BUDGET_EPSILON:
        errors.append(f"Total payments ({snapshot.total_paid:.2f}) exceed project budget ({project.total_budget:.2f})")

    if invoice_type == InvoiceType.COMPLETION_FINAL:
        if abs(amount - remaining) > BUDGET_EPSILON:
            errors.append(f"Final amount {amount:.2f} does not match remaining budget {remaining:.2f}")
    elif invoice_type == InvoiceType.COMPLETION_MANUAL:
        if amount - remaining > BUDGET_EPSILON:
            errors.append(f"Payment of {amount:.2f} would exceed remaining budget of {remaining:.2f}")

    report = IntegrityReport(not errors, remaining, amount, errors)
    logger.info(
        "Budget integrity for project %s (%s %.2f): %s",
        project.id, invoice_type.value, amount, "VALID" if report.is_valid else "; ".join(errors),
    )
    return report


def ensure_budget_integrity(db: Session, project: Project, invoice_type: InvoiceType, amount: float) -> IntegrityReport:
    report = check_budget_integrity(db, project, invoice_type, amount)
    if not report.is_valid:
        raise ConflictError(
            ErrorCode.BUDGET_INTEGRITY_VIOLATION,
            "Budget integrity check failed: " + "; ".join(report.errors),
        )
    return report


def all_tasks_approved(tasks) -> bool:
    return bool(tasks) and all(task.approved for task in tasks)


def validate_payment_state(db: Session, project: Project) -> dict:
    errors = []
    if project.invoicing_method != InvoicingMethod.COMPLETION:
        errors.append("Not a completion project")
    snapshot = budget_snapshot(db, project)
    if not snapshot.upfront_paid:
        errors.append("Upfront payment not completed")
    if snapshot.upfront_count > 1:
        errors.append(f"Duplicate upfront invoices ({snapshot.upfront_count})")
    if snapshot.final_count > 1:
        errors.append(f"Duplicate final invoices ({snapshot.final_count})")
    if snapshot.total_paid > project.total_budget + BUDGET_EPSILON:
        errors.append(f"Total payments ({snapshot.total_paid:.2f}) exceed project budget ({project.total_budget:.2f})")

    return {
        "isValid": not errors,
        "upfrontPaid": snapshot.upfront_paid,
        "manualPaymentsCount": snapshot.manual_paid_count,
        "remainingAmount": snapshot.remaining,
        "errors": errors,
        "summary": {
            "totalBudget": project.total_budget,
            "upfrontAmount": snapshot.upfront_amount,
            "manualPaymentsTotal": snapshot.manual_paid_total,
            "finalAmount": snapshot.final_paid_total if snapshot.final_paid else snapshot.remaining,
        },
    }


def calculate_project_progress(db: Session, project: Project) -> dict:
    snapshot = budget_snapshot(db, project)
    tasks = get_tasks(db, project.id)
    approved = sum(1 for task in tasks if task.approved)

    progress = 0.0
    if snapshot.upfront_paid:
        progress += UPFRONT_PERCENTAGE
    if snapshot.final_paid:
        progress += 100.0 - UPFRONT_PERCENTAGE

    return {
        "progressPercentage": progress,
        "upfrontCompleted": snapshot.upfront_paid,
        "manualPaymentsCount": snapshot.manual_paid_count,
        "finalPaymentCompleted": snapshot.final_paid,
        "totalTasks": len(tasks),
        "approvedTasks": approved,
    }


def final_payout_status(db: Session, project: Project) -> dict:
    """Single gate for whether a completion project can be paid out."""
    tasks = get_tasks(db, project.id)
    approved = sum(1 for task in tasks if task.approved)
    snapshot = budget_snapshot(db, project)
    all_approved = all_tasks_approved(tasks)
    has_remaining = snapshot.remaining > BUDGET_EPSILON
    already = snapshot.final_count > 0

    if not all_approved:
        reason = f"Not all tasks approved ({approved}/{len(tasks)})"
    elif already:
        reason = "Final payment already processed"
    elif not has_remaining:
        reason = f"No remaining budget ({snapshot.remaining:.2f})"
    else:
        reason = "Ready for final payout"

    return {
        "isReadyForFinalPayout": all_approved and has_remaining and not already,
        "allTasksApproved": all_approved,
        "hasRemainingBudget": has_remaining,
        "remainingBudget": snapshot.remaining,
        "totalTasks": len(tasks),
        "approvedTasks": approved,
        "finalPaymentAlreadyProcessed": already,
        "reason": reason,
    }
