"""Withdrawals: hold on request, finalize on payout, release on cancel."""
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from audit import log_wallet_change, log_withdrawal_transition
from auth import Account, assert_ownership
from config import DEFAULT_CURRENCY
from crud import append_transaction, apply_wallet_state, get_wallet, get_withdrawal
from errors import ApiError, ConflictError, ErrorCode, NotFoundError
from events import enqueue_event, WITHDRAWAL_REQUESTED, WITHDRAWAL_PAID
from gateway import KIND_WITHDRAWAL
from idempotency import fingerprint, idempotent, remember, OP_WITHDRAW
from ledger import WalletState, hold, finalize_withdrawal, release_hold, round_money, validate_currency
from locks import entity_lock
from models import TransactionStatus, TransactionType, Withdrawal, WithdrawalStatus, utcnow
from payments import new_correlation_id, settle, wallet_key
from schemas import dump, TransactionOut, WalletOut, WithdrawalOut

logger = logging.getLogger(__name__)


def generate_withdrawal_id() -> str:
    return f"WD-{uuid.uuid4().hex[:12].upper()}"


def _load_withdrawal(db: Session, account: Account, withdrawal_id: str) -> Withdrawal:
    withdrawal = get_withdrawal(db, withdrawal_id, for_update=True)
    if not withdrawal:
        raise NotFoundError(ErrorCode.WITHDRAWAL_NOT_FOUND, f"Withdrawal {withdrawal_id} not found")
    assert_ownership(account, withdrawal.user_id, "withdrawal")
    return withdrawal


def _withdrawal_transaction(db: Session, withdrawal: Withdrawal, status: TransactionStatus, integration: str,
                            correlation_id: str, gateway_reference: Optional[str] = None, **metadata):
    return append_transaction(
        db,
        user_id=withdrawal.user_id,
        transaction_type=TransactionType.WITHDRAWAL,
        status=status,
        amount=withdrawal.amount,
        currency=withdrawal.currency,
        integration=integration,
        reference=withdrawal.withdrawal_id,
        metadata={"correlationId": correlation_id, **metadata},
        withdrawal_id=withdrawal.withdrawal_id,
        gateway_reference=gateway_reference,
        description=f"Withdrawal {withdrawal.withdrawal_id}",
    )


def _response(withdrawal: Withdrawal, wallet, txn=None, already_processed: bool = False) -> dict:
    return {
        "withdrawal": dump(WithdrawalOut, withdrawal),
        "wallet": dump(WalletOut, wallet),
        "transaction": dump(TransactionOut, txn),
        "alreadyProcessed": already_processed,
    }


def _existing_withdrawal(db: Session, account: Account, withdrawal_id: Optional[str]) -> Optional[dict]:
    if not withdrawal_id:
        return None
    existing = get_withdrawal(db, withdrawal_id)
    if existing is None:
        return None
    assert_ownership(account, existing.user_id, "withdrawal")
    return _response(existing, get_wallet(db, existing.user_id, existing.currency), already_processed=True)


def request_withdrawal(db: Session, account: Account, amount: float, currency: Optional[str] = None,
                       withdrawal_id: Optional[str] = None, idempotency_key: Optional[str] = None,
                       correlation_id: Optional[str] = None) -> dict:
    """Move ``amount`` from available to pending withdrawals.

    A client-supplied ``withdrawal_id`` makes the request idempotent: asking
    again returns the existing withdrawal with ``alreadyProcessed`` set.
    """
    correlation_id = new_correlation_id(correlation_id)
    currency = validate_currency(currency, DEFAULT_CURRENCY)
    request_fingerprint = fingerprint(amount=round_money(amount), currency=currency, withdrawal_id=withdrawal_id)

    with idempotent(db, OP_WITHDRAW, idempotency_key, account.id, request_fingerprint) as cached:
        if cached is not None:
            return cached
        with entity_lock("wallet", wallet_key(account.id, currency)):
            existing = _existing_withdrawal(db, account, withdrawal_id)
            if existing is not None:
                return existing
            withdrawal_id = withdrawal_id or generate_withdrawal_id()

            wallet = get_wallet(db, account.id, currency, for_update=True)
            before = WalletState.from_model(wallet) if wallet else WalletState(user_id=account.id, currency=currency)
            result = hold(before, amount)
            if not result.ok:
                logger.info("Withdrawal of %.2f %s refused for user %s: %s",
                            amount, currency, account.id, result.reason)
                raise ApiError(result.code, result.reason)

            apply_wallet_state(wallet, result.wallet)
            withdrawal = Withdrawal(
                withdrawal_id=withdrawal_id,
                user_id=account.id,
                user_type=account.user_type,
                amount=amount,
                currency=currency,
                status=WithdrawalStatus.PENDING,
            )
            db.add(withdrawal)
            txn = _withdrawal_transaction(db, withdrawal, TransactionStatus.PROCESSING, "wallet", correlation_id,
                                          idempotencyKey=idempotency_key)
            log_wallet_change(db, account.id, currency, "hold", amount, before.available_balance,
                              result.wallet.available_balance, account.id, {"withdrawalId": withdrawal_id})
            log_withdrawal_transition(db, withdrawal_id, None, WithdrawalStatus.PENDING.value, account.id)
            enqueue_event(db, WITHDRAWAL_REQUESTED, {
                "withdrawal_id": withdrawal_id,
                "user_id": account.id,
                "amount": amount,
                "currency": currency,
            })
            try:
                db.flush()
                response = _response(withdrawal, wallet, txn)
                remember(db, OP_WITHDRAW, idempotency_key, response, account.id, request_fingerprint)
                db.commit()
            except IntegrityError:
                # Same withdrawal id written by another process or under another currency lock
                db.rollback()
                existing = _existing_withdrawal(db, account, withdrawal_id)
                if existing is None:
                    raise
                logger.info("Withdrawal %s was created concurrently, returning it", withdrawal_id)
                return existing

    logger.info("Withdrawal %s requested by user %s: %.2f %s [%s]",
                withdrawal_id, account.id, amount, currency, correlation_id)
    return response


def execute_withdrawal(db: Session, account: Account, withdrawal_id: str, gateway,
                       correlation_id: Optional[str] = None) -> dict:
    """Pay a pending withdrawal out through the gateway (``pending -> paid``)."""
    correlation_id = new_correlation_id(correlation_id)
    with entity_lock("withdrawal", withdrawal_id):
        withdrawal = _load_withdrawal(db, account, withdrawal_id)
        if withdrawal.status == WithdrawalStatus.PAID:
            return _response(withdrawal, get_wallet(db, withdrawal.user_id, withdrawal.currency),
                             already_processed=True)
        if withdrawal.status != WithdrawalStatus.PENDING:
            raise ConflictError(ErrorCode.INVALID_STATUS_TRANSITION,
                                f"Withdrawal {withdrawal_id} is {withdrawal.status.value}")

        with entity_lock("wallet", wallet_key(withdrawal.user_id, withdrawal.currency)):
            with settle(db, "withdrawal") as settlement:
                wallet = get_wallet(db, withdrawal.user_id, withdrawal.currency, for_update=True)
                before = WalletState.from_model(wallet)
                receipt = settlement.charge(gateway, withdrawal_id, withdrawal.amount, withdrawal.currency,
                                            KIND_WITHDRAWAL)
                result = finalize_withdrawal(before, withdrawal.amount)
                if not result.ok:
                    raise ApiError(result.code, result.reason)
                apply_wallet_state(wallet, result.wallet)

                withdrawal.status = WithdrawalStatus.PAID
                withdrawal.processed_at = utcnow()
                txn = _withdrawal_transaction(db, withdrawal, TransactionStatus.PAID, receipt.integration,
                                              correlation_id, receipt.reference)
                log_wallet_change(db, withdrawal.user_id, withdrawal.currency, "finalize_withdrawal",
                                  withdrawal.amount, before.pending_withdrawals, result.wallet.pending_withdrawals,
                                  account.id, {"withdrawalId": withdrawal_id})
                log_withdrawal_transition(db, withdrawal_id, WithdrawalStatus.PENDING.value,
                                          WithdrawalStatus.PAID.value, account.id,
                                          {"gatewayReference": receipt.reference})
                enqueue_event(db, WITHDRAWAL_PAID, {
                    "withdrawal_id": withdrawal_id,
                    "user_id": withdrawal.user_id,
                    "amount": withdrawal.amount,
                    "currency": withdrawal.currency,
                })
                db.flush()
                response = _response(withdrawal, wallet, txn)

    logger.info("Withdrawal %s paid out [%s]", withdrawal_id, correlation_id)
    return response


def cancel_withdrawal(db: Session, account: Account, withdrawal_id: str,
                      correlation_id: Optional[str] = None) -> dict:
    """Return a pending withdrawal's funds to the available balance."""
    correlation_id = new_correlation_id(correlation_id)
    with entity_lock("withdrawal", withdrawal_id):
        withdrawal = _load_withdrawal(db, account, withdrawal_id)
        if withdrawal.status != WithdrawalStatus.PENDING:
            raise ConflictError(ErrorCode.INVALID_STATUS_TRANSITION,
                                f"Only pending withdrawals can be cancelled ({withdrawal.status.value})")

        with entity_lock("wallet", wallet_key(withdrawal.user_id, withdrawal.currency)):
            wallet = get_wallet(db, withdrawal.user_id, withdrawal.currency, for_update=True)
            before = WalletState.from_model(wallet)
            result = release_hold(before, withdrawal.amount)
            if not result.ok:
                raise ApiError(result.code, result.reason)
            apply_wallet_state(wallet, result.wallet)

            withdrawal.status = WithdrawalStatus.CANCELLED
            withdrawal.processed_at = utcnow()
            txn = _withdrawal_transaction(db, withdrawal, TransactionStatus.CANCELLED, "wallet", correlation_id)
            log_wallet_change(db, withdrawal.user_id, withdrawal.currency, "release_hold", withdrawal.amount,
                              before.available_balance, result.wallet.available_balance, account.id,
                              {"withdrawalId": withdrawal_id})
            log_withdrawal_transition(db, withdrawal_id, WithdrawalStatus.PENDING.value,
                                      WithdrawalStatus.CANCELLED.value, account.id)
            db.flush()
            response = _response(withdrawal, wallet, txn)
            db.commit()

    return response
