from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Literal
from datetime import datetime
from models import (
    InvoiceStatus, InvoiceType, InvoicingMethod, MilestoneStatus, ProjectStatus,
    TaskStatus, TransactionStatus, TransactionType, UserType, WithdrawalStatus
)


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def dump(schema: type[BaseModel], obj) -> Optional[dict]:
    if obj is None:
        return None
    return schema.model_validate(obj).model_dump(by_alias=True, mode="json")


# ---------- Requests ----------

class InvoiceActionRequest(CamelModel):
    invoice_number: str = Field(min_length=1)


class ProjectPaymentRequest(CamelModel):
    project_id: int


class CalculateRequest(CamelModel):
    calculation_type: Literal["upfront", "manual_invoice", "remaining_budget", "validate_state", "project_progress"]
    project_id: Optional[int] = None
    total_budget: Optional[float] = None
    total_tasks: Optional[int] = None


class WithdrawRequest(CamelModel):
    amount: float = Field(gt=0)
    currency: Optional[str] = None
    withdrawal_id: Optional[str] = None  # client-supplied, makes the request idempotent


class ProjectCreate(CamelModel):
    title: str = Field(min_length=1)
    invoicing_method: InvoicingMethod
    total_budget: float = Field(gt=0)
    currency: Optional[str] = None
    commissioner_name: Optional[str] = None
    freelancer_id: Optional[int] = None


class ProjectActivate(CamelModel):
    freelancer_id: Optional[int] = None


class MilestoneCreate(CamelModel):
    title: str = Field(min_length=1)
    rate: float = Field(gt=0)


class TaskCreate(CamelModel):
    title: str = Field(min_length=1)
    milestone_id: Optional[int] = None
    status: Optional[str] = None


class MilestoneInvoiceRequest(CamelModel):
    project_id: int
    milestone_id: int


class ManualInvoiceRequest(CamelModel):
    project_id: int
    task_id: int


# ---------- Responses ----------

class InvoiceOut(CamelModel):
    invoice_number: str
    project_id: int
    freelancer_id: int
    commissioner_id: int
    task_id: Optional[int] = None
    milestone_id: Optional[int] = None
    invoice_type: InvoiceType
    status: InvoiceStatus
    total_amount: float
    currency: str
    line_items: list[dict] = []
    payment_details: Optional[dict] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    reminders: list[dict] = []
    last_reminder_at: Optional[datetime] = None


class TransactionOut(CamelModel):
    transaction_id: str
    transaction_type: TransactionType = Field(serialization_alias="type")
    status: TransactionStatus
    amount: float
    currency: str
    user_id: int
    invoice_number: Optional[str] = None
    withdrawal_id: Optional[str] = None
    project_id: Optional[int] = None
    integration: str
    gateway_reference: Optional[str] = None
    meta: Optional[dict] = Field(default=None, serialization_alias="metadata")
    created_at: Optional[datetime] = None


class WalletOut(CamelModel):
    user_id: int
    user_type: UserType
    currency: str
    available_balance: float
    pending_withdrawals: float
    total_withdrawn: float
    lifetime_earnings: float
    holds: float
    updated_at: Optional[datetime] = None


class WithdrawalOut(CamelModel):
    withdrawal_id: str
    user_id: int
    amount: float
    currency: str
    status: WithdrawalStatus
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class MilestoneOut(CamelModel):
    id: int
    title: str
    rate: float
    status: MilestoneStatus


class TaskOut(CamelModel):
    id: int
    milestone_id: Optional[int] = None
    title: str
    status: TaskStatus
    approved: bool
    completed: bool
    version: int
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None


class ProjectOut(CamelModel):
    id: int = Field(serialization_alias="projectId")
    commissioner_id: int
    commissioner_name: Optional[str] = None
    freelancer_id: Optional[int] = None
    title: str
    invoicing_method: InvoicingMethod
    total_budget: float
    currency: str
    status: ProjectStatus
    upfront_percentage: Optional[float] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProjectDetailOut(ProjectOut):
    milestones: list[MilestoneOut] = []
    tasks: list[TaskOut] = []


class NotificationOut(CamelModel):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    is_read: bool
    created_at: datetime
