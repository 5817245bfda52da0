import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from database import SessionLocal
from ledger import WalletState
from models import (
    Project,
    Milestone,
    Task,
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    InvoiceType,
    Wallet,
    Transaction,
    TransactionType,
    TransactionStatus,
    Withdrawal,
    Notification,
    ReconciliationRecord,
    UserType,
    utcnow,
)

logger = logging.getLogger(__name__)


def _locked(query, for_update: bool):
    # FOR UPDATE is not rendered on SQLite; the in-process entity locks cover it there
    return query.with_for_update() if for_update else query


# ---------- Projects / tasks ----------

def get_project(db: Session, project_id: int, for_update: bool = False) -> Optional[Project]:
    return _locked(db.query(Project).filter(Project.id == project_id), for_update).first()


def get_task(db: Session, project_id: int, task_id: int) -> Optional[Task]:
    return db.query(Task).filter(Task.project_id == project_id, Task.id == task_id).first()


def get_tasks(db: Session, project_id: int) -> list[Task]:
    return db.query(Task).filter(Task.project_id == project_id).order_by(Task.id).all()


def get_milestone(db: Session, project_id: int, milestone_id: int) -> Optional[Milestone]:
    return db.query(Milestone).filter(Milestone.project_id == project_id, Milestone.id == milestone_id).first()


# ---------- Invoices ----------

def get_invoice_by_number(db: Session, invoice_number: str, for_update: bool = False) -> Optional[Invoice]:
    query = db.query(Invoice).filter(Invoice.invoice_number == invoice_number)
    return _locked(query, for_update).first()


def get_invoices(db: Session, project_id: Optional[int] = None, invoice_type: Optional[InvoiceType] = None,
                 status: Optional[InvoiceStatus] = None, user_id: Optional[int] = None) -> list[Invoice]:
    query = db.query(Invoice)
    if project_id is not None:
        query = query.filter(Invoice.project_id == project_id)
    if invoice_type is not None:
        query = query.filter(Invoice.invoice_type == invoice_type)
    if status is not None:
        query = query.filter(Invoice.status == status)
    if user_id is not None:
        query = query.filter((Invoice.freelancer_id == user_id) | (Invoice.commissioner_id == user_id))
    return query.order_by(Invoice.id).all()


def get_past_due_invoices(db: Session, now) -> list[Invoice]:
    return db.query(Invoice).filter(
        Invoice.status == InvoiceStatus.SENT,
        Invoice.due_date.isnot(None),
        Invoice.due_date < now,
    ).order_by(Invoice.id).all()


def find_invoice(db: Session, project_id: int, invoice_type: InvoiceType,
                 task_id: Optional[int] = None, milestone_id: Optional[int] = None) -> Optional[Invoice]:
    """Existing invoice for the uniqueness key of its type (cancelled ones do not count)."""
    query = db.query(Invoice).filter(
        Invoice.project_id == project_id,
        Invoice.invoice_type == invoice_type,
        Invoice.status != InvoiceStatus.CANCELLED,
    )
    if task_id is not None:
        query = query.filter(Invoice.task_id == task_id)
    if milestone_id is not None:
        query = query.filter(Invoice.milestone_id == milestone_id)
    return query.order_by(Invoice.id).first()


def next_invoice_sequence(db: Session, prefix: str) -> int:
    sequence = _locked(
        db.query(InvoiceSequence).filter(InvoiceSequence.prefix == prefix), True
    ).first()
    if sequence is None:
        sequence = InvoiceSequence(prefix=prefix, last_value=0)
        db.add(sequence)
    sequence.last_value += 1
    db.flush()
    return sequence.last_value


# ---------- Wallets ----------

def get_wallet(db: Session, user_id: int, currency: str, for_update: bool = False) -> Optional[Wallet]:
    query = db.query(Wallet).filter(Wallet.user_id == user_id, Wallet.currency == currency)
    return _locked(query, for_update).first()


def get_or_create_wallet(db: Session, user_id: int, user_type: UserType, currency: str,
                         for_update: bool = False) -> Wallet:
    wallet = get_wallet(db, user_id, currency, for_update=for_update)
    if not wallet:
        wallet = Wallet(
            user_id=user_id,
            user_type=user_type,
            currency=currency,
            available_balance=0.0,
            pending_withdrawals=0.0,
            total_withdrawn=0.0,
            lifetime_earnings=0.0,
            holds=0.0,
        )
        db.add(wallet)
        db.flush()
        logger.info("Created %s wallet for user %s", currency, user_id)
    return wallet


def apply_wallet_state(wallet: Wallet, state: WalletState) -> Wallet:
    wallet.available_balance = state.available_balance
    wallet.pending_withdrawals = state.pending_withdrawals
    wallet.total_withdrawn = state.total_withdrawn
    wallet.lifetime_earnings = state.lifetime_earnings
    wallet.holds = state.holds
    wallet.updated_at = utcnow()
    return wallet


# ---------- Transactions (append-only) ----------

def generate_transaction_id(reference: str) -> str:
    return f"TXN-{reference}-{uuid.uuid4().hex[:8].upper()}"


def append_transaction(db: Session, *, user_id: int, transaction_type: TransactionType, status: TransactionStatus,
                       amount: float, currency: str, integration: str, reference: str,
                       metadata: Optional[dict] = None, **fields) -> Transaction:
    transaction = Transaction(
        transaction_id=generate_transaction_id(reference),
        user_id=user_id,
        transaction_type=transaction_type,
        status=status,
        amount=amount,
        currency=currency,
        integration=integration,
        meta=metadata or {},
        **fields,
    )
    db.add(transaction)
    return transaction


def get_transactions(db: Session, user_id: int, limit: int = 50) -> list[Transaction]:
    return db.query(Transaction).filter(
        Transaction.user_id == user_id
    ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()


def get_transactions_for_invoice(db: Session, invoice_number: str) -> list[Transaction]:
    return db.query(Transaction).filter(
        Transaction.invoice_number == invoice_number
    ).order_by(Transaction.id).all()


# ---------- Withdrawals ----------

def get_withdrawal(db: Session, withdrawal_id: str, for_update: bool = False) -> Optional[Withdrawal]:
    query = db.query(Withdrawal).filter(Withdrawal.withdrawal_id == withdrawal_id)
    return _locked(query, for_update).first()


# ---------- Notifications ----------

def create_notification(db: Session, user_id: int, type: str, title: str, message: str, data: dict = None):
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data or {}
    )
    db.add(notification)
    return notification


def get_notifications(db: Session, user_id: int, limit: int = 50, unread_only: bool = False):
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_notification_read(db: Session, notification_id: int, user_id: int):
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id
    ).first()
    if notification:
        notification.is_read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: int):
    db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False)
    ).update({"is_read": True})
    db.commit()


# ---------- Reconciliation ----------

def record_reconciliation(operation: str, reference: str, gateway_reference: Optional[str],
                          amount: float, currency: str, error: str) -> None:
    """Written in its own session: the caller's transaction has already failed."""
    db = SessionLocal()
    try:
        db.add(ReconciliationRecord(
            operation=operation,
            reference=reference,
            gateway_reference=gateway_reference,
            amount=amount,
            currency=currency,
            error=error,
        ))
        db.commit()
    finally:
        db.close()
    logger.critical(
        "Unresolved payment %s for %s (gateway ref %s, %.2f %s): %s",
        operation, reference, gateway_reference, amount, currency, error,
    )
