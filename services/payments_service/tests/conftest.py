import os
import random

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RABBITMQ_URL"] = ""
os.environ["PAYMENT_GATEWAY"] = "mock"
os.environ["PAYMENT_GATEWAY_LATENCY"] = "0"
os.environ["PAYMENTS_REQUIRE_ELIGIBILITY"] = "true"

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import SessionLocal, engine
from gateway import MockGateway, get_gateway
from main import app
from models import Base

COMMISSIONER_ID = 10
FREELANCER_ID = 20
OTHER_FREELANCER_ID = 21
OTHER_COMMISSIONER_ID = 11


def auth_headers(user_id: int, role: str) -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


def reliable_gateway():
    return MockGateway(payment_failure_rate=0.0, withdrawal_failure_rate=0.0, latency=0, rng=random.Random(7))


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    app.dependency_overrides[get_gateway] = reliable_gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class Marketplace:
    """Drives the API as one commissioner and one freelancer."""

    def __init__(self, client):
        self.client = client
        self.commissioner = auth_headers(COMMISSIONER_ID, "commissioner")
        self.freelancer = auth_headers(FREELANCER_ID, "freelancer")

    def call(self, method, url, headers, expected=200, **kwargs):
        response = self.client.request(method, url, headers=headers, **kwargs)
        assert response.status_code == expected, response.text
        return response.json()["data"]

    def create_project(self, invoicing_method, total_budget, **extra):
        body = {
            "title": extra.pop("title", "Brand refresh"),
            "invoicingMethod": invoicing_method,
            "totalBudget": total_budget,
            "commissionerName": extra.pop("commissioner_name", "Jane Doe"),
            **extra,
        }
        return self.call("POST", "/api/v1/projects", self.commissioner, 201, json=body)["project"]

    def activate(self, project_id, freelancer_id=FREELANCER_ID):
        return self.call("POST", f"/api/v1/projects/{project_id}/activate", self.commissioner,
                         json={"freelancerId": freelancer_id})["project"]

    def add_task(self, project_id, title, milestone_id=None):
        return self.call("POST", f"/api/v1/projects/{project_id}/tasks", self.commissioner, 201,
                         json={"title": title, "milestoneId": milestone_id})["task"]

    def add_milestone(self, project_id, title, rate):
        return self.call("POST", f"/api/v1/projects/{project_id}/milestones", self.commissioner, 201,
                         json={"title": title, "rate": rate})["milestone"]

    def approve(self, project_id, task_id):
        return self.call("POST", f"/api/v1/projects/{project_id}/tasks/{task_id}/approve", self.commissioner)

    def completion_project(self, total_budget, task_count):
        project = self.create_project("completion", total_budget)
        tasks = [self.add_task(project["projectId"], f"Task {i + 1}") for i in range(task_count)]
        project = self.activate(project["projectId"])
        return project, tasks

    def send(self, invoice_number):
        return self.call("POST", f"/api/v1/invoices/{invoice_number}/send", self.freelancer)["invoice"]

    def trigger(self, invoice_number, **kwargs):
        return self.call("POST", "/api/v1/payments/trigger", self.freelancer,
                         json={"invoiceNumber": invoice_number}, **kwargs)

    def execute(self, invoice_number, **kwargs):
        return self.call("POST", "/api/v1/payments/execute", self.commissioner,
                         json={"invoiceNumber": invoice_number}, **kwargs)

    def execute_upfront(self, project_id):
        return self.call("POST", "/api/v1/payments/completion/execute-upfront", self.commissioner,
                         json={"projectId": project_id})

    def execute_final(self, project_id):
        return self.call("POST", "/api/v1/payments/completion/execute-final", self.commissioner,
                         json={"projectId": project_id})

    def wallet(self, headers=None):
        return self.call("GET", "/api/v1/payments/wallet", headers or self.freelancer)["wallet"]

    def history(self, headers=None):
        return self.call("GET", "/api/v1/payments/history", headers or self.freelancer)["transactions"]


@pytest.fixture
def market(client):
    return Marketplace(client)
