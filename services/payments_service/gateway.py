import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from config import (
    PAYMENT_GATEWAY,
    PAYMENT_GATEWAY_URL,
    PAYMENT_GATEWAY_TIMEOUT,
    PAYMENT_GATEWAY_LATENCY,
    MOCK_PAYMENT_FAILURE_RATE,
    MOCK_WITHDRAWAL_FAILURE_RATE,
)
from errors import GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)

KIND_PAYMENT = "payment"
KIND_WITHDRAWAL = "withdrawal"


@dataclass
class GatewayReceipt:
    reference: str
    integration: str
    amount: float
    currency: str


class MockGateway:
    """Simulated processor: artificial latency plus a random failure rate per kind."""

    integration = "mock"

    def __init__(
        self,
        payment_failure_rate: float = MOCK_PAYMENT_FAILURE_RATE,
        withdrawal_failure_rate: float = MOCK_WITHDRAWAL_FAILURE_RATE,
        latency: float = PAYMENT_GATEWAY_LATENCY,
        timeout: float = PAYMENT_GATEWAY_TIMEOUT,
        rng: Optional[random.Random] = None,
    ):
        self.failure_rates = {
            KIND_PAYMENT: payment_failure_rate,
            KIND_WITHDRAWAL: withdrawal_failure_rate,
        }
        self.latency = latency
        self.timeout = timeout
        self.rng = rng or random.Random()

    def charge(self, reference: str, amount: float, currency: str, kind: str = KIND_PAYMENT) -> GatewayReceipt:
        if self.latency > self.timeout:
            time.sleep(self.timeout)
            raise GatewayTimeout(f"Payment gateway did not answer within {self.timeout:.0f}s")
        if self.latency > 0:
            time.sleep(self.latency)

        if self.rng.random() < self.failure_rates.get(kind, 0.0):
            logger.warning("Mock gateway declined %s %s for %.2f %s", kind, reference, amount, currency)
            raise GatewayError(f"Mock {kind} failed for {reference}, please retry")

        return GatewayReceipt(
            reference=f"MOCK-{uuid.uuid4().hex[:12].upper()}",
            integration=self.integration,
            amount=amount,
            currency=currency,
        )


class HttpGateway:
    """Processor reached over HTTP: ``POST {base_url}/charges``."""

    integration = "http"

    def __init__(self, base_url: str = PAYMENT_GATEWAY_URL, timeout: float = PAYMENT_GATEWAY_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def charge(self, reference: str, amount: float, currency: str, kind: str = KIND_PAYMENT) -> GatewayReceipt:
        payload = {"reference": reference, "amount": amount, "currency": currency, "kind": kind}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.post("/charges", json=payload)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"Payment gateway timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Cannot reach payment gateway: {exc}") from exc

        if response.status_code >= 500:
            raise GatewayError(f"Payment gateway error ({response.status_code})")
        body = response.json()
        if response.status_code != 200 or body.get("status") != "succeeded":
            raise GatewayError(body.get("message") or f"Payment declined for {reference}")

        return GatewayReceipt(
            reference=body.get("id") or reference,
            integration=self.integration,
            amount=amount,
            currency=currency,
        )


_gateway = None


def get_gateway():
    global _gateway
    if _gateway is None:
        if PAYMENT_GATEWAY == "http":
            _gateway = HttpGateway()
        else:
            _gateway = MockGateway()
        logger.info("Using %s payment gateway", _gateway.integration)
    return _gateway
