"""Payment trigger/execution and the completion upfront/final flows.

Every money-moving call follows the same shape: take the entity locks, check
state and authorization, call the gateway, then write invoice, transaction,
wallet, audit trail and outbox event in a single commit. Anything that fails
after the gateway confirmed the charge is recorded for reconciliation.
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

import config
from audit import log_wallet_change, SUBSYSTEM_TRIGGER, SUBSYSTEM_EXECUTE, SUBSYSTEM_COMPLETION
from auth import Account, assert_ownership, require_user_type
from calculations import all_tasks_approved, budget_snapshot, ensure_budget_integrity
from crud import (
    append_transaction,
    apply_wallet_state,
    find_invoice,
    get_invoice_by_number,
    get_milestone,
    get_or_create_wallet,
    get_project,
    get_task,
    get_tasks,
    get_transactions_for_invoice,
    record_reconciliation,
)
from errors import ApiError, ConflictError, ErrorCode, ForbiddenError, InvalidInputError, NotFoundError, ReconciliationRequired
from events import enqueue_event, INVOICE_PAID, UPFRONT_PAID, FINAL_PAID, PROJECT_COMPLETED
from gateway import KIND_PAYMENT
from idempotency import fingerprint, idempotent, remember, OP_TRIGGER, OP_EXECUTE
from invoices import authorize_transition, complete_project, create_final_invoice, create_upfront_invoice, transition
from ledger import WalletState, credit, round_money
from locks import entity_lock
from models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    InvoicingMethod,
    MilestoneStatus,
    Project,
    ProjectStatus,
    TransactionStatus,
    TransactionType,
    UserType,
)
from schemas import dump, InvoiceOut, ProjectOut, TransactionOut, WalletOut

logger = logging.getLogger(__name__)


def new_correlation_id(value: Optional[str] = None) -> str:
    return value or uuid.uuid4().hex


def wallet_key(user_id: int, currency: str) -> str:
    return f"{user_id}:{currency}"


class Settlement:
    """Tracks the gateway charge made inside a ``settle`` block."""

    def __init__(self, operation: str):
        self.operation = operation
        self.receipt = None
        self.reference = None
        self.amount = 0.0
        self.currency = None

    def charge(self, gateway, reference: str, amount: float, currency: str, kind: str = KIND_PAYMENT):
        self.reference, self.amount, self.currency = reference, amount, currency
        self.receipt = gateway.charge(reference, amount, currency, kind)
        logger.info("Gateway %s confirmed %s %s for %.2f %s",
                    self.receipt.integration, kind, reference, amount, currency)
        return self.receipt


@contextmanager
def settle(db: Session, operation: str):
    """Commit on success, roll back on failure.

    A failure after ``Settlement.charge`` succeeded means money moved without a
    ledger entry, so it is written to ``reconciliation_records``.
    """
    settlement = Settlement(operation)
    try:
        yield settlement
        db.commit()
    except Exception as exc:
        db.rollback()
        if settlement.receipt is None:
            raise
        record_reconciliation(
            operation, settlement.reference, settlement.receipt.reference,
            settlement.amount, settlement.currency, repr(exc),
        )
        if isinstance(exc, StaleDataError):
            raise ConflictError(
                ErrorCode.CONCURRENT_MODIFICATION,
                f"{settlement.reference} was modified concurrently; the payment has been flagged for reconciliation",
            ) from exc
        raise ReconciliationRequired(
            f"Payment for {settlement.reference} was confirmed by the gateway but could not be recorded"
        ) from exc


def _load_invoice(db: Session, invoice_number: str, for_update: bool = False) -> Invoice:
    invoice = get_invoice_by_number(db, invoice_number, for_update=for_update)
    if not invoice:
        raise NotFoundError(ErrorCode.INVOICE_NOT_FOUND, f"Invoice {invoice_number} not found")
    return invoice


def _load_project(db: Session, project_id: int, for_update: bool = False) -> Project:
    project = get_project(db, project_id, for_update=for_update)
    if not project:
        raise NotFoundError(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found")
    return project


def payment_eligibility(db: Session, invoice: Invoice, project: Project) -> Optional[str]:
    """Reason the invoice cannot be paid yet, or None."""
    if project.status != ProjectStatus.ACTIVE:
        return f"Project {project.id} is {project.status.value}"
    if invoice.invoice_type == InvoiceType.MILESTONE:
        milestone = get_milestone(db, project.id, invoice.milestone_id) if invoice.milestone_id else None
        if milestone is None or milestone.status not in (MilestoneStatus.APPROVED, MilestoneStatus.INVOICED):
            return "Milestone has not been approved"
    elif invoice.invoice_type == InvoiceType.COMPLETION_MANUAL:
        task = get_task(db, project.id, invoice.task_id) if invoice.task_id else None
        if task is None or not task.approved:
            return "Task has not been approved"
    elif invoice.invoice_type == InvoiceType.COMPLETION_FINAL:
        if not all_tasks_approved(get_tasks(db, project.id)):
            return "All tasks must be approved before the final payment"
    return None


def _latest_transaction_id(db: Session, invoice_number: str, status: TransactionStatus) -> Optional[str]:
    for txn in reversed(get_transactions_for_invoice(db, invoice_number)):
        if txn.status == status:
            return txn.transaction_id
    return None


def trigger_payment(db: Session, account: Account, invoice_number: str,
                    idempotency_key: Optional[str] = None, correlation_id: Optional[str] = None) -> dict:
    """Freelancer asks for payment of a sent invoice (``sent -> processing``)."""
    require_user_type(account, UserType.FREELANCER)
    request_fingerprint = fingerprint(invoice_number=invoice_number)
    correlation_id = new_correlation_id(correlation_id)

    with idempotent(db, OP_TRIGGER, idempotency_key, account.id, request_fingerprint) as cached:
        if cached is not None:
            return cached
        with entity_lock("invoice", invoice_number):
            invoice = _load_invoice(db, invoice_number, for_update=True)
            assert_ownership(account, invoice.freelancer_id, "invoice")
            if invoice.status == InvoiceStatus.PAID:
                raise ConflictError(ErrorCode.PAYMENT_ALREADY_PROCESSED, f"Invoice {invoice_number} is already paid")
            if invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
                raise ConflictError(
                    ErrorCode.INVALID_STATUS_TRANSITION,
                    f"Invoice {invoice_number} must be 'sent' or 'overdue' to trigger payment "
                    f"(current: '{invoice.status.value}')",
                )

            project = _load_project(db, invoice.project_id)
            if config.PAYMENTS_REQUIRE_ELIGIBILITY:
                reason = payment_eligibility(db, invoice, project)
                if reason:
                    raise ForbiddenError(f"Invoice {invoice_number} is not eligible for payment: {reason}",
                                         ErrorCode.PAYMENT_NOT_ELIGIBLE)

            transition(db, invoice, invoice.status, InvoiceStatus.PROCESSING, account, SUBSYSTEM_TRIGGER,
                       {"correlationId": correlation_id})
            txn = append_transaction(
                db,
                user_id=invoice.freelancer_id,
                transaction_type=TransactionType.INVOICE_PAYMENT,
                status=TransactionStatus.PROCESSING,
                amount=invoice.total_amount,
                currency=invoice.currency,
                integration=config.PAYMENT_GATEWAY,
                reference=invoice_number,
                metadata={
                    "correlationId": correlation_id,
                    "idempotencyKey": idempotency_key,
                    "triggeredBy": account.id,
                },
                invoice_number=invoice_number,
                project_id=invoice.project_id,
                freelancer_id=invoice.freelancer_id,
                commissioner_id=invoice.commissioner_id,
                description=f"Payment requested for invoice {invoice_number}",
            )
            db.flush()
            response = {"invoice": dump(InvoiceOut, invoice), "transaction": dump(TransactionOut, txn)}
            remember(db, OP_TRIGGER, idempotency_key, response, account.id, request_fingerprint)
            db.commit()

    logger.info("Payment triggered for %s by freelancer %s [%s]", invoice_number, account.id, correlation_id)
    return response


def _pay_invoice(db: Session, settlement: Settlement, invoice: Invoice, project: Project, account: Account,
                 gateway, correlation_id: str, idempotency_key: Optional[str], subsystem: str):
    """Charge and record one ``processing`` invoice. The caller owns the commit."""
    authorize_transition(invoice, InvoiceStatus.PAID, account)
    if invoice.status == InvoiceStatus.PAID:
        raise ConflictError(ErrorCode.PAYMENT_ALREADY_PROCESSED, f"Invoice {invoice.invoice_number} is already paid")
    if invoice.status != InvoiceStatus.PROCESSING:
        raise ConflictError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Invoice {invoice.invoice_number} must be 'processing' to execute payment "
            f"(current: '{invoice.status.value}')",
        )
    if invoice.invoice_type in (InvoiceType.COMPLETION_MANUAL, InvoiceType.COMPLETION_FINAL):
        ensure_budget_integrity(db, project, invoice.invoice_type, invoice.total_amount)

    wallet = get_or_create_wallet(db, invoice.freelancer_id, UserType.FREELANCER, invoice.currency, for_update=True)
    receipt = settlement.charge(gateway, invoice.invoice_number, invoice.total_amount, invoice.currency)

    original_txn = _latest_transaction_id(db, invoice.invoice_number, TransactionStatus.PROCESSING)
    transition(db, invoice, InvoiceStatus.PROCESSING, InvoiceStatus.PAID, account, subsystem,
               {"correlationId": correlation_id, "gatewayReference": receipt.reference})
    details = dict(invoice.payment_details or {})
    details.update({"paymentId": receipt.reference, "processedAt": invoice.paid_date.isoformat()})
    invoice.payment_details = details
    payout = details.get("freelancerAmount", invoice.total_amount)

    txn = append_transaction(
        db,
        user_id=invoice.freelancer_id,
        transaction_type=TransactionType.INVOICE_PAYMENT,
        status=TransactionStatus.PAID,
        amount=invoice.total_amount,
        currency=invoice.currency,
        integration=receipt.integration,
        reference=invoice.invoice_number,
        metadata={
            "correlationId": correlation_id,
            "idempotencyKey": idempotency_key,
            "originalTransactionId": original_txn,
            "executedBy": account.id,
            "platformFee": details.get("platformFee", 0.0),
        },
        invoice_number=invoice.invoice_number,
        project_id=invoice.project_id,
        freelancer_id=invoice.freelancer_id,
        commissioner_id=invoice.commissioner_id,
        gateway_reference=receipt.reference,
        description=f"Payment for invoice {invoice.invoice_number}",
    )

    before = WalletState.from_model(wallet)
    result = credit(before, payout)
    if not result.ok:
        raise ApiError(result.code, result.reason)
    apply_wallet_state(wallet, result.wallet)
    log_wallet_change(db, wallet.user_id, wallet.currency, "credit", payout,
                      before.available_balance, result.wallet.available_balance, account.id,
                      {"invoiceNumber": invoice.invoice_number, "transactionId": txn.transaction_id})

    if invoice.milestone_id:
        milestone = get_milestone(db, project.id, invoice.milestone_id)
        if milestone:
            milestone.status = MilestoneStatus.PAID
    if invoice.invoice_type == InvoiceType.COMPLETION_FINAL:
        complete_project(db, project, account.id, reason="final_payment")
        _project_completed_event(db, project)

    enqueue_event(db, INVOICE_PAID, {
        "invoice_number": invoice.invoice_number,
        "invoice_type": invoice.invoice_type.value,
        "project_id": project.id,
        "project_title": project.title,
        "freelancer_id": invoice.freelancer_id,
        "commissioner_id": invoice.commissioner_id,
        "amount": invoice.total_amount,
        "currency": invoice.currency,
        "correlation_id": correlation_id,
    })
    db.flush()
    return txn, wallet


def execute_payment(db: Session, account: Account, invoice_number: str, gateway,
                    idempotency_key: Optional[str] = None, correlation_id: Optional[str] = None) -> dict:
    """Commissioner pays a ``processing`` invoice (``processing -> paid``)."""
    require_user_type(account, UserType.COMMISSIONER)
    request_fingerprint = fingerprint(invoice_number=invoice_number)
    correlation_id = new_correlation_id(correlation_id)

    with idempotent(db, OP_EXECUTE, idempotency_key, account.id, request_fingerprint) as cached:
        if cached is not None:
            return cached
        with entity_lock("invoice", invoice_number):
            invoice = _load_invoice(db, invoice_number, for_update=True)
            assert_ownership(account, invoice.commissioner_id, "invoice")
            project = _load_project(db, invoice.project_id)
            with entity_lock("wallet", wallet_key(invoice.freelancer_id, invoice.currency)):
                with settle(db, "invoice_payment") as settlement:
                    txn, wallet = _pay_invoice(db, settlement, invoice, project, account, gateway,
                                               correlation_id, idempotency_key, SUBSYSTEM_EXECUTE)
                    response = {"invoice": dump(InvoiceOut, invoice), "transaction": dump(TransactionOut, txn)}
                    remember(db, OP_EXECUTE, idempotency_key, response, account.id, request_fingerprint)

    logger.info("Invoice %s paid by commissioner %s [%s]", invoice_number, account.id, correlation_id)
    return response


def _completion_project(db: Session, account: Account, project_id: int) -> Project:
    require_user_type(account, UserType.COMMISSIONER)
    project = _load_project(db, project_id, for_update=True)
    assert_ownership(account, project.commissioner_id, "project")
    if project.invoicing_method != InvoicingMethod.COMPLETION:
        raise InvalidInputError(f"Project {project_id} is not completion-based")
    if project.freelancer_id is None:
        raise ConflictError(ErrorCode.INVALID_STATUS, f"Project {project_id} has no assigned freelancer")
    return project


def _wallet_dump(db: Session, project: Project) -> dict:
    wallet = get_or_create_wallet(db, project.freelancer_id, UserType.FREELANCER, project.currency)
    return dump(WalletOut, wallet)


def execute_upfront_payment(db: Session, account: Account, project_id: int, gateway,
                            correlation_id: Optional[str] = None) -> dict:
    """Create (or reuse) and pay the upfront invoice of an active completion project."""
    correlation_id = new_correlation_id(correlation_id)
    with entity_lock("project", project_id):
        project = _completion_project(db, account, project_id)
        if project.status != ProjectStatus.ACTIVE:
            raise ConflictError(ErrorCode.INVALID_STATUS,
                                f"Project must be active before the upfront payment (current: '{project.status.value}')")

        existing = find_invoice(db, project.id, InvoiceType.COMPLETION_UPFRONT)
        if existing and existing.status == InvoiceStatus.PAID:
            paid_txn = _latest_transaction_id(db, existing.invoice_number, TransactionStatus.PAID)
            txn = next((t for t in get_transactions_for_invoice(db, existing.invoice_number)
                        if t.transaction_id == paid_txn), None)
            response = {
                "invoice": dump(InvoiceOut, existing),
                "transaction": dump(TransactionOut, txn),
                "wallet": _wallet_dump(db, project),
                "project": dump(ProjectOut, project),
                "alreadyPaid": True,
            }
            db.commit()
            return response

        with entity_lock("wallet", wallet_key(project.freelancer_id, project.currency)):
            with settle(db, "completion_upfront") as settlement:
                invoice, _ = create_upfront_invoice(db, project)
                txn, wallet = _pay_invoice(db, settlement, invoice, project, account, gateway,
                                           correlation_id, None, SUBSYSTEM_COMPLETION)
                enqueue_event(db, UPFRONT_PAID, {
                    "project_id": project.id,
                    "project_title": project.title,
                    "freelancer_id": project.freelancer_id,
                    "commissioner_id": project.commissioner_id,
                    "invoice_number": invoice.invoice_number,
                    "amount": invoice.total_amount,
                    "currency": invoice.currency,
                })
                response = {
                    "invoice": dump(InvoiceOut, invoice),
                    "transaction": dump(TransactionOut, txn),
                    "wallet": dump(WalletOut, wallet),
                    "project": dump(ProjectOut, project),
                    "alreadyPaid": False,
                }

    logger.info("Upfront payment for project %s: %.2f %s [%s]",
                project_id, response["invoice"]["totalAmount"], response["invoice"]["currency"], correlation_id)
    return response


def _summary(db: Session, project: Project) -> dict:
    snapshot = budget_snapshot(db, project)
    return {
        "totalBudget": project.total_budget,
        "upfrontAmount": snapshot.upfront_amount,
        "manualPaymentsTotal": snapshot.manual_paid_total,
        "manualPaymentsCount": snapshot.manual_paid_count,
        "finalAmount": snapshot.final_paid_total,
        "totalPaid": snapshot.total_paid,
        "remainingBudget": snapshot.remaining,
    }


def _project_completed_event(db: Session, project: Project):
    enqueue_event(db, PROJECT_COMPLETED, {
        "project_id": project.id,
        "project_title": project.title,
        "freelancer_id": project.freelancer_id,
        "commissioner_id": project.commissioner_id,
    })


def execute_final_payment(db: Session, account: Account, project_id: int, gateway,
                          correlation_id: Optional[str] = None) -> dict:
    """Pay the remaining budget of a completion project and complete it."""
    correlation_id = new_correlation_id(correlation_id)
    with entity_lock("project", project_id):
        project = _completion_project(db, account, project_id)
        existing = find_invoice(db, project.id, InvoiceType.COMPLETION_FINAL)
        if existing and existing.status == InvoiceStatus.PAID:
            raise ConflictError(ErrorCode.ALREADY_PROCESSED, "Final payment already processed for this project")
        if project.status != ProjectStatus.ACTIVE:
            raise ConflictError(ErrorCode.INVALID_STATUS,
                                f"Project must be active for the final payment (current: '{project.status.value}')")
        if not budget_snapshot(db, project).upfront_paid:
            raise ConflictError(ErrorCode.PAYMENT_NOT_ELIGIBLE, "Upfront payment must be completed first")

        with entity_lock("wallet", wallet_key(project.freelancer_id, project.currency)):
            with settle(db, "completion_final") as settlement:
                invoice = existing or create_final_invoice(db, project)
                txn = None
                if invoice is None:
                    logger.info("Project %s has no remaining budget, completing without a final invoice", project.id)
                    _project_completed_event(db, project)
                else:
                    txn, _ = _pay_invoice(db, settlement, invoice, project, account, gateway,
                                          correlation_id, None, SUBSYSTEM_COMPLETION)
                    enqueue_event(db, FINAL_PAID, {
                        "project_id": project.id,
                        "project_title": project.title,
                        "freelancer_id": project.freelancer_id,
                        "commissioner_id": project.commissioner_id,
                        "invoice_number": invoice.invoice_number,
                        "amount": invoice.total_amount,
                        "currency": invoice.currency,
                    })
                db.flush()
                response = {
                    "invoice": dump(InvoiceOut, invoice),
                    "transaction": dump(TransactionOut, txn),
                    "wallet": _wallet_dump(db, project),
                    "project": dump(ProjectOut, project),
                    "summary": _summary(db, project),
                }

    logger.info("Final payment for project %s: %s [%s]", project_id,
                response["invoice"]["invoiceNumber"] if response["invoice"] else "nothing due", correlation_id)
    return response


def calculation_constants() -> dict:
    rate = config.UPFRONT_PERCENTAGE
    return {
        "upfrontPercentage": rate,
        "remainingPercentage": round_money(100.0 - rate),
        "formulas": {
            "upfront": f"totalBudget * {rate / 100:g}",
            "manualInvoice": f"(totalBudget * {1 - rate / 100:g}) / totalTasks",
            "remainingBudget": "totalBudget - upfront - sum(paid manual) - sum(paid final)",
        },
    }
