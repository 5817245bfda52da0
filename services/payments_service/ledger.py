"""Wallet ledger rules.

Pure functions: each takes a ``WalletState`` and returns a ``LedgerResult``
holding either the new state or the reason the operation was refused.
Business-rule violations never raise; persisting the new state is the
caller's job (see ``crud.apply_wallet_state``).
"""
from dataclasses import dataclass, replace
from typing import Optional

from errors import ErrorCode


def round_money(value: float) -> float:
    return round(float(value), 2)


def validate_currency(currency: Optional[str], fallback: str = "USD") -> str:
    if not currency or not isinstance(currency, str) or not currency.strip():
        return fallback
    return currency.strip().upper()


@dataclass(frozen=True)
class WalletState:
    user_id: int
    currency: str
    available_balance: float = 0.0
    pending_withdrawals: float = 0.0
    total_withdrawn: float = 0.0
    lifetime_earnings: float = 0.0
    holds: float = 0.0

    @classmethod
    def from_model(cls, wallet) -> "WalletState":
        return cls(
            user_id=wallet.user_id,
            currency=wallet.currency,
            available_balance=wallet.available_balance or 0.0,
            pending_withdrawals=wallet.pending_withdrawals or 0.0,
            total_withdrawn=wallet.total_withdrawn or 0.0,
            lifetime_earnings=wallet.lifetime_earnings or 0.0,
            holds=wallet.holds or 0.0,
        )


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    wallet: WalletState
    code: Optional[str] = None
    reason: Optional[str] = None


def _refuse(wallet: WalletState, code: str, reason: str) -> LedgerResult:
    return LedgerResult(ok=False, wallet=wallet, code=code, reason=reason)


def credit(wallet: WalletState, amount: float) -> LedgerResult:
    if amount is None or amount <= 0:
        return _refuse(wallet, ErrorCode.INVALID_INPUT, "Credit amount must be > 0")
    if not wallet.currency or not wallet.currency.strip():
        return _refuse(wallet, ErrorCode.INVALID_INPUT, "Wallet must have a valid currency")
    updated = replace(
        wallet,
        available_balance=round_money(wallet.available_balance + amount),
        lifetime_earnings=round_money(wallet.lifetime_earnings + amount),
    )
    return LedgerResult(ok=True, wallet=updated)


def hold(wallet: WalletState, amount: float) -> LedgerResult:
    if amount is None or amount <= 0:
        return _refuse(wallet, ErrorCode.INVALID_INPUT, "Withdrawal amount must be > 0")
    if amount > wallet.available_balance:
        return _refuse(
            wallet,
            ErrorCode.INSUFFICIENT_FUNDS,
            f"Insufficient available balance. Available: {wallet.available_balance:.2f}, Required: {amount:.2f}",
        )
    updated = replace(
        wallet,
        available_balance=round_money(wallet.available_balance - amount),
        pending_withdrawals=round_money(wallet.pending_withdrawals + amount),
        holds=round_money(wallet.holds + amount),
    )
    return LedgerResult(ok=True, wallet=updated)


def finalize_withdrawal(wallet: WalletState, amount: float) -> LedgerResult:
    if amount is None or amount <= 0:
        return _refuse(wallet, ErrorCode.INVALID_INPUT, "Finalize amount must be > 0")
    if wallet.pending_withdrawals < amount:
        return _refuse(wallet, ErrorCode.INSUFFICIENT_FUNDS, "Insufficient pending withdrawals")
    updated = replace(
        wallet,
        pending_withdrawals=round_money(wallet.pending_withdrawals - amount),
        total_withdrawn=round_money(wallet.total_withdrawn + amount),
        holds=round_money(max(wallet.holds - amount, 0.0)),
    )
    return LedgerResult(ok=True, wallet=updated)


def release_hold(wallet: WalletState, amount: float) -> LedgerResult:
    """Return held funds to the available balance (cancelled withdrawal)."""
    if amount is None or amount <= 0:
        return _refuse(wallet, ErrorCode.INVALID_INPUT, "Release amount must be > 0")
    if wallet.pending_withdrawals < amount:
        return _refuse(wallet, ErrorCode.INSUFFICIENT_FUNDS, "Insufficient pending withdrawals")
    updated = replace(
        wallet,
        pending_withdrawals=round_money(wallet.pending_withdrawals - amount),
        available_balance=round_money(wallet.available_balance + amount),
        holds=round_money(max(wallet.holds - amount, 0.0)),
    )
    return LedgerResult(ok=True, wallet=updated)
