import logging
from typing import Optional
from sqlalchemy.orm import Session
from models import AuditLog

logger = logging.getLogger("payments.audit")

SUBSYSTEM_TRIGGER = "payments.trigger"
SUBSYSTEM_EXECUTE = "payments.execute"
SUBSYSTEM_COMPLETION = "payments.completion"
SUBSYSTEM_WITHDRAW = "payments.withdraw"
SUBSYSTEM_INVOICES = "invoices"
SUBSYSTEM_PROJECTS = "projects"
SUBSYSTEM_WALLETS = "wallets.update"


def _write(db: Session, subsystem: str, entity_type: str, entity_id, action: str,
           from_state: Optional[str], to_state: Optional[str], actor_id: Optional[int], details: Optional[dict]):
    db.add(AuditLog(
        subsystem=subsystem,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        from_state=from_state,
        to_state=to_state,
        actor_id=actor_id,
        details=details or {},
    ))


def log_invoice_transition(db: Session, invoice_number: str, from_status: Optional[str], to_status: str,
                           actor_id: Optional[int], subsystem: str, details: Optional[dict] = None):
    logger.info("[%s] invoice %s: %s -> %s by %s", subsystem, invoice_number, from_status, to_status, actor_id)
    _write(db, subsystem, "invoice", invoice_number, "transition", from_status, to_status, actor_id, details)


def log_wallet_change(db: Session, user_id: int, currency: str, action: str, amount: float,
                      previous_balance: float, new_balance: float, actor_id: Optional[int], details: Optional[dict] = None):
    logger.info(
        "[%s] wallet %s/%s %s %.2f: %.2f -> %.2f",
        SUBSYSTEM_WALLETS, user_id, currency, action, amount, previous_balance, new_balance,
    )
    payload = {"amount": amount, "currency": currency, **(details or {})}
    _write(db, SUBSYSTEM_WALLETS, "wallet", f"{user_id}:{currency}", action,
           f"{previous_balance:.2f}", f"{new_balance:.2f}", actor_id, payload)


def log_withdrawal_transition(db: Session, withdrawal_id: str, from_status: Optional[str], to_status: str,
                              actor_id: Optional[int], details: Optional[dict] = None):
    logger.info("[%s] withdrawal %s: %s -> %s", SUBSYSTEM_WITHDRAW, withdrawal_id, from_status, to_status)
    _write(db, SUBSYSTEM_WITHDRAW, "withdrawal", withdrawal_id, "transition", from_status, to_status, actor_id, details)


def log_project_transition(db: Session, project_id: int, from_status: Optional[str], to_status: str,
                           actor_id: Optional[int], details: Optional[dict] = None):
    logger.info("[%s] project %s: %s -> %s", SUBSYSTEM_PROJECTS, project_id, from_status, to_status)
    _write(db, SUBSYSTEM_PROJECTS, "project", project_id, "transition", from_status, to_status, actor_id, details)
