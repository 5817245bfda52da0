from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from auth import Account, create_access_token
from conftest import COMMISSIONER_ID, FREELANCER_ID, reliable_gateway
from errors import ApiError, ReconciliationRequired, error_for_status
from factories import make_project
from idempotency import fingerprint, lookup, purge_expired, remember, OP_EXECUTE
from invoices import create_upfront_invoice
from main import app
from models import IdempotencyRecord, Invoice, InvoiceStatus, ReconciliationRecord, UserType, Wallet
from payments import settle, _pay_invoice


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_expired_token_is_rejected(client):
    token = create_access_token({"sub": 1, "role": "freelancer"}, expires_delta=timedelta(seconds=-1))
    response = client.get("/api/v1/payments/wallet", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_unknown_role_is_forbidden(client):
    token = create_access_token({"sub": 1, "role": "guest"})
    response = client.get("/api/v1/payments/wallet", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN_USER_TYPE"


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/v1/nowhere")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": {"code": "NOT_FOUND", "message": "Not Found"}}


def test_wrong_method_uses_envelope(client):
    response = client.delete("/health")
    assert response.status_code == 405
    assert response.json()["success"] is False
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_unmapped_client_errors_are_validation_errors():
    assert error_for_status(405) == "NOT_FOUND"
    assert error_for_status(409) == "VALIDATION_ERROR"
    assert error_for_status(418) == "VALIDATION_ERROR"
    assert error_for_status(502) == "INTERNAL_ERROR"


def test_idempotency_key_reused_with_other_request_is_rejected(db):
    remember(db, OP_EXECUTE, "key-2", {"invoice": {}}, 10, fingerprint(invoice_number="JD-001"))
    db.commit()
    with pytest.raises(ApiError) as exc:
        lookup(db, OP_EXECUTE, "key-2", 10, fingerprint(invoice_number="JD-002"))
    assert exc.value.code == "IDEMPOTENCY_KEY_REUSED"
    assert exc.value.status_code == 422


def test_unexpected_errors_are_masked(monkeypatch):
    import routes

    def explode(*args, **kwargs):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(routes, "get_transactions", explode)
    token = create_access_token({"sub": 1, "role": "freelancer"})
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/v1/payments/history", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    }


def test_idempotency_records_expire(db):
    request = fingerprint(invoice_number="JD-001")
    remember(db, OP_EXECUTE, "key-1", {"invoice": {"status": "paid"}}, 10, request)
    db.commit()
    assert lookup(db, OP_EXECUTE, "key-1", 10, request) == {"invoice": {"status": "paid"}}
    assert lookup(db, "payments.trigger", "key-1", 10, request) is None
    assert lookup(db, OP_EXECUTE, "key-1", 11, request) is None

    record = db.query(IdempotencyRecord).one()
    record.expires_at = record.created_at - timedelta(seconds=1)
    db.commit()
    assert lookup(db, OP_EXECUTE, "key-1", 10, request) is None
    assert db.query(IdempotencyRecord).count() == 0


def test_purge_expired(db):
    remember(db, OP_EXECUTE, "old", {}, 10, fingerprint())
    remember(db, OP_EXECUTE, "new", {}, 10, fingerprint())
    db.commit()
    old = db.query(IdempotencyRecord).filter(IdempotencyRecord.idempotency_key == "old").one()
    old.expires_at = old.created_at - timedelta(hours=1)
    db.commit()

    assert purge_expired(db) == 1
    assert [r.idempotency_key for r in db.query(IdempotencyRecord).all()] == ["new"]


def test_failure_after_gateway_is_flagged_for_reconciliation(db):
    project = make_project(db, 2000)
    commissioner = Account(id=COMMISSIONER_ID, user_type=UserType.COMMISSIONER)

    with pytest.raises(ReconciliationRequired):
        with settle(db, "completion_upfront") as settlement:
            invoice, _ = create_upfront_invoice(db, project)
            _pay_invoice(db, settlement, invoice, project, commissioner, reliable_gateway(),
                         "corr-1", None, "test")
            raise RuntimeError("disk full")

    record = db.query(ReconciliationRecord).one()
    assert record.operation == "completion_upfront"
    assert record.amount == 240.0
    assert record.gateway_reference.startswith("MOCK-")
    assert "disk full" in record.error
    assert db.query(Invoice).count() == 0
    assert db.query(Wallet).filter(Wallet.user_id == FREELANCER_ID).count() == 0


def test_failure_before_gateway_is_not_flagged(db):
    project = make_project(db, 2000)
    with pytest.raises(RuntimeError):
        with settle(db, "completion_upfront"):
            invoice, _ = create_upfront_invoice(db, project)
            raise RuntimeError("validation blew up")

    assert db.query(ReconciliationRecord).count() == 0
    assert db.query(Invoice).filter(Invoice.status == InvoiceStatus.PROCESSING).count() == 0
