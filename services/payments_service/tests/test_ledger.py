import random

from ledger import WalletState, credit, hold, finalize_withdrawal, release_hold, round_money, validate_currency


def wallet(**balances):
    return WalletState(user_id=1, currency="USD", **balances)


def test_credit_increases_available_and_lifetime():
    result = credit(wallet(available_balance=10.0, lifetime_earnings=10.0), 240.0)
    assert result.ok
    assert result.wallet.available_balance == 250.0
    assert result.wallet.lifetime_earnings == 250.0


def test_credit_rejects_non_positive_amounts():
    start = wallet()
    for amount in (0, -5, None):
        result = credit(start, amount)
        assert not result.ok
        assert result.code == "INVALID_INPUT"
        assert result.wallet is start


def test_credit_requires_currency():
    result = credit(WalletState(user_id=1, currency="  "), 10.0)
    assert not result.ok


def test_hold_over_available_is_refused_and_state_unchanged():
    start = wallet(available_balance=100.0)
    result = hold(start, 100.01)
    assert not result.ok
    assert result.code == "INSUFFICIENT_FUNDS"
    assert result.wallet == start


def test_hold_moves_available_to_pending():
    result = hold(wallet(available_balance=100.0), 40.0)
    assert result.ok
    assert result.wallet.available_balance == 60.0
    assert result.wallet.pending_withdrawals == 40.0
    assert result.wallet.holds == 40.0


def test_finalize_requires_pending():
    result = finalize_withdrawal(wallet(pending_withdrawals=10.0), 20.0)
    assert not result.ok
    assert result.code == "INSUFFICIENT_FUNDS"


def test_release_returns_hold():
    result = release_hold(wallet(available_balance=60.0, pending_withdrawals=40.0, holds=40.0), 40.0)
    assert result.ok
    assert result.wallet.available_balance == 100.0
    assert result.wallet.pending_withdrawals == 0.0
    assert result.wallet.holds == 0.0


def test_hold_then_finalize_conserves_money():
    rng = random.Random(42)
    for _ in range(200):
        available = round_money(rng.uniform(0, 5000))
        amount = round_money(rng.uniform(0.01, 6000))
        start = wallet(available_balance=available, lifetime_earnings=available)

        held = hold(start, amount)
        if amount > available:
            assert not held.ok and held.wallet == start
            continue
        done = finalize_withdrawal(held.wallet, amount)
        assert done.ok
        end = done.wallet
        assert end.available_balance >= 0 and end.pending_withdrawals >= 0
        assert round_money(end.available_balance + end.total_withdrawn) == available
        assert end.lifetime_earnings == start.lifetime_earnings
        assert held.wallet.holds == amount
        assert end.holds == 0.0


def test_validate_currency():
    assert validate_currency(" eur ") == "EUR"
    assert validate_currency("") == "USD"
    assert validate_currency(None, fallback="GBP") == "GBP"
