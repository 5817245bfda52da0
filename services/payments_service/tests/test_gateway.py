import json
import random

import httpx
import pytest

from errors import GatewayError, GatewayTimeout
from gateway import HttpGateway, MockGateway, KIND_PAYMENT, KIND_WITHDRAWAL


def http_gateway(handler):
    return HttpGateway(base_url="http://gateway.test", timeout=1.0, transport=httpx.MockTransport(handler))


def test_http_gateway_success():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "ch_123", "status": "succeeded"})

    receipt = http_gateway(handler).charge("JD-001", 240.0, "USD")

    assert receipt.reference == "ch_123"
    assert receipt.integration == "http"
    assert seen["path"] == "/charges"
    assert seen["body"] == {"reference": "JD-001", "amount": 240.0, "currency": "USD", "kind": KIND_PAYMENT}


def test_http_gateway_decline_is_retryable_error():
    gateway = http_gateway(lambda request: httpx.Response(402, json={"status": "declined", "message": "Card declined"}))
    with pytest.raises(GatewayError) as exc:
        gateway.charge("JD-001", 10.0, "USD")
    assert exc.value.message == "Card declined"
    assert exc.value.retryable
    assert exc.value.status_code == 502


def test_http_gateway_server_error():
    gateway = http_gateway(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(GatewayError):
        gateway.charge("JD-001", 10.0, "USD")


def test_http_gateway_timeout_fails_closed():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeout) as exc:
        http_gateway(handler).charge("JD-001", 10.0, "USD")
    assert exc.value.code == "SERVICE_UNAVAILABLE"
    assert exc.value.status_code == 503


def test_http_gateway_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc:
        http_gateway(handler).charge("JD-001", 10.0, "USD")
    assert exc.value.code == "PAYMENT_GATEWAY_ERROR"


def test_mock_gateway_uses_failure_rate_per_kind():
    gateway = MockGateway(payment_failure_rate=1.0, withdrawal_failure_rate=0.0, latency=0)
    with pytest.raises(GatewayError):
        gateway.charge("JD-001", 10.0, "USD", KIND_PAYMENT)
    assert gateway.charge("WD-1", 10.0, "USD", KIND_WITHDRAWAL).reference.startswith("MOCK-")


def test_mock_gateway_default_rates_are_low():
    gateway = MockGateway(latency=0, rng=random.Random(1))
    failures = 0
    for i in range(2000):
        try:
            gateway.charge(f"JD-{i}", 1.0, "USD")
        except GatewayError:
            failures += 1
    assert 40 <= failures <= 170


def test_mock_gateway_times_out_when_slower_than_budget():
    gateway = MockGateway(payment_failure_rate=0.0, latency=0.05, timeout=0.01)
    with pytest.raises(GatewayTimeout):
        gateway.charge("JD-001", 10.0, "USD")
