import pytest

from conftest import auth_headers, FREELANCER_ID, OTHER_FREELANCER_ID
from crud import apply_wallet_state, get_or_create_wallet
from gateway import MockGateway, get_gateway
from ledger import WalletState, credit
from main import app
from models import UserType


@pytest.fixture
def funded(db):
    wallet = get_or_create_wallet(db, FREELANCER_ID, UserType.FREELANCER, "USD")
    apply_wallet_state(wallet, credit(WalletState.from_model(wallet), 500.0).wallet)
    db.commit()
    return wallet


def withdraw(client, amount, headers=None, **extra):
    return client.post("/api/v1/withdraw", headers=headers or auth_headers(FREELANCER_ID, "freelancer"),
                       json={"amount": amount, **extra})


def test_withdrawal_over_balance_is_rejected_without_changes(market, client, funded):
    before = market.wallet()
    response = withdraw(client, 800)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
    assert market.wallet() == before
    assert market.history() == []


def test_withdrawal_holds_then_pays_out(market, client, funded):
    response = withdraw(client, 200)
    assert response.status_code == 200
    data = response.json()["data"]
    withdrawal_id = data["withdrawal"]["withdrawalId"]
    assert data["withdrawal"]["status"] == "pending"
    assert data["wallet"]["availableBalance"] == 300.0
    assert data["wallet"]["pendingWithdrawals"] == 200.0
    assert data["wallet"]["holds"] == 200.0

    paid = market.call("POST", f"/api/v1/withdraw/{withdrawal_id}/execute", market.freelancer)
    assert paid["withdrawal"]["status"] == "paid"
    assert paid["wallet"]["pendingWithdrawals"] == 0.0
    assert paid["wallet"]["totalWithdrawn"] == 200.0
    assert paid["wallet"]["holds"] == 0.0
    assert paid["wallet"]["availableBalance"] == 300.0
    assert paid["transaction"]["type"] == "withdrawal"

    again = market.call("POST", f"/api/v1/withdraw/{withdrawal_id}/execute", market.freelancer)
    assert again["alreadyProcessed"] is True
    assert market.wallet()["totalWithdrawn"] == 200.0


def test_cancel_releases_hold(market, client, funded):
    withdrawal_id = withdraw(client, 120).json()["data"]["withdrawal"]["withdrawalId"]

    cancelled = market.call("POST", f"/api/v1/withdraw/{withdrawal_id}/cancel", market.freelancer)
    assert cancelled["withdrawal"]["status"] == "cancelled"
    assert cancelled["wallet"]["availableBalance"] == 500.0
    assert cancelled["wallet"]["pendingWithdrawals"] == 0.0

    response = client.post(f"/api/v1/withdraw/{withdrawal_id}/execute", headers=market.freelancer)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"


def test_client_withdrawal_id_is_idempotent(market, client, funded):
    first = withdraw(client, 100, withdrawalId="WD-CLIENT-1").json()["data"]
    second = withdraw(client, 100, withdrawalId="WD-CLIENT-1").json()["data"]

    assert second["alreadyProcessed"] is True
    assert second["withdrawal"]["withdrawalId"] == first["withdrawal"]["withdrawalId"]
    assert market.wallet()["availableBalance"] == 400.0


def test_gateway_failure_keeps_withdrawal_pending(market, client, funded):
    withdrawal_id = withdraw(client, 50).json()["data"]["withdrawal"]["withdrawalId"]
    app.dependency_overrides[get_gateway] = lambda: MockGateway(withdrawal_failure_rate=1.0, latency=0)

    response = client.post(f"/api/v1/withdraw/{withdrawal_id}/execute", headers=market.freelancer)
    assert response.status_code == 502
    assert response.json()["error"]["retryable"] is True

    wallet = market.wallet()
    assert wallet["pendingWithdrawals"] == 50.0
    assert wallet["totalWithdrawn"] == 0.0


def test_other_user_cannot_touch_withdrawal(client, funded):
    withdrawal_id = withdraw(client, 50).json()["data"]["withdrawal"]["withdrawalId"]
    response = client.post(f"/api/v1/withdraw/{withdrawal_id}/cancel",
                           headers=auth_headers(OTHER_FREELANCER_ID, "freelancer"))
    assert response.status_code == 403


def test_non_positive_amount_is_a_validation_error(client, funded):
    response = withdraw(client, 0)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_currency_is_normalised(client, funded):
    data = withdraw(client, 10, currency=" usd ").json()["data"]
    assert data["withdrawal"]["currency"] == "USD"
