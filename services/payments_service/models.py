from sqlalchemy import Column, Integer, String, Float, Text, DateTime, ForeignKey, Boolean, JSON, TypeDecorator, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so everything is stored naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EnumValue(TypeDecorator):
    """Custom TypeDecorator to store enum values instead of names"""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, self.enum_class):
            return value.value
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return self.enum_class(value)


class InvoicingMethod(str, enum.Enum):
    MILESTONE = "milestone"
    COMPLETION = "completion"


class ProjectStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    INVOICED = "invoiced"
    PAID = "paid"


class TaskStatus(str, enum.Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def from_string(cls, value: str) -> "TaskStatus":
        # Marketplace board labels map onto the workflow states
        aliases = {
            "ongoing": cls.IN_PROGRESS,
            "in review": cls.REVIEW,
            "approved": cls.DONE,
        }
        key = (value or "").strip().lower()
        if key in aliases:
            return aliases[key]
        return cls(key.replace(" ", "_"))


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PROCESSING = "processing"
    PAID = "paid"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class InvoiceType(str, enum.Enum):
    MILESTONE = "milestone"
    COMPLETION_UPFRONT = "completion_upfront"
    COMPLETION_MANUAL = "completion_manual"
    COMPLETION_FINAL = "completion_final"


class TransactionType(str, enum.Enum):
    INVOICE_PAYMENT = "invoice_payment"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, enum.Enum):
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UserType(str, enum.Enum):
    FREELANCER = "freelancer"
    COMMISSIONER = "commissioner"
    ADMIN = "admin"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    commissioner_id = Column(Integer, nullable=False, index=True)
    commissioner_name = Column(String, nullable=True)
    freelancer_id = Column(Integer, nullable=True, index=True)
    title = Column(String, nullable=False)
    invoicing_method = Column(EnumValue(InvoicingMethod, length=20), nullable=False)
    total_budget = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(EnumValue(ProjectStatus, length=20), nullable=False, default=ProjectStatus.PENDING)
    upfront_percentage = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    activated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    milestones = relationship("Milestone", back_populates="project", order_by="Milestone.id")
    tasks = relationship("Task", back_populates="project", order_by="Task.id")


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    rate = Column(Float, nullable=False)
    status = Column(EnumValue(MilestoneStatus, length=20), nullable=False, default=MilestoneStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)

    project = relationship("Project", back_populates="milestones")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)
    title = Column(String, nullable=False)
    status = Column(EnumValue(TaskStatus, length=20), nullable=False, default=TaskStatus.TODO)
    approved = Column(Boolean, default=False)
    completed = Column(Boolean, default=False)
    version = Column(Integer, nullable=False, default=1)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    project = relationship("Project", back_populates="tasks")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String, unique=True, nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    freelancer_id = Column(Integer, nullable=False, index=True)
    commissioner_id = Column(Integer, nullable=False, index=True)
    task_id = Column(Integer, nullable=True)
    milestone_id = Column(Integer, nullable=True)
    invoice_type = Column(EnumValue(InvoiceType, length=30), nullable=False)
    status = Column(EnumValue(InvoiceStatus, length=20), nullable=False, default=InvoiceStatus.DRAFT)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    line_items = Column(JSON, nullable=False, default=list)  # [{"description": ..., "rate": ...}]
    payment_details = Column(JSON, nullable=True)
    issue_date = Column(DateTime, default=utcnow)
    due_date = Column(DateTime, nullable=True)
    paid_date = Column(DateTime, nullable=True)
    reminders = Column(JSON, nullable=False, default=list)  # [{"sentAt": ..., "sentBy": ..., "isOverdue": ...}]
    last_reminder_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class InvoiceSequence(Base):
    """Counter per invoice-number prefix, so commissioners sharing initials share a sequence."""
    __tablename__ = "invoice_sequences"

    prefix = Column(String(32), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (UniqueConstraint("user_id", "currency", name="uq_wallet_user_currency"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    user_type = Column(EnumValue(UserType, length=20), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    available_balance = Column(Float, nullable=False, default=0.0)
    pending_withdrawals = Column(Float, nullable=False, default=0.0)
    total_withdrawn = Column(Float, nullable=False, default=0.0)
    lifetime_earnings = Column(Float, nullable=False, default=0.0)
    holds = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class Transaction(Base):
    """Append-only money movement record. Rows are never updated."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    transaction_type = Column(EnumValue(TransactionType, length=30), nullable=False)
    status = Column(EnumValue(TransactionStatus, length=20), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    integration = Column(String, nullable=False, default="mock")
    invoice_number = Column(String, nullable=True, index=True)
    withdrawal_id = Column(String, nullable=True, index=True)
    project_id = Column(Integer, nullable=True)
    freelancer_id = Column(Integer, nullable=True)
    commissioner_id = Column(Integer, nullable=True)
    gateway_reference = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    withdrawal_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    user_type = Column(EnumValue(UserType, length=20), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(EnumValue(WithdrawalStatus, length=20), nullable=False, default=WithdrawalStatus.PENDING)
    requested_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("operation", "user_id", "idempotency_key", name="uq_idempotency_operation_user_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    operation = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    user_id = Column(Integer, nullable=False)
    # Hash of the request fields the key was first used with
    fingerprint = Column(String(64), nullable=False)
    response = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(EnumValue(OutboxStatus, length=20), nullable=False, default=OutboxStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    # Notifications are written once; only the broker publish is retried after that
    notified_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    type = Column(String, nullable=False)  # 'invoice_paid', 'upfront_paid', 'withdrawal_paid', etc.
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    subsystem = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)  # invoice, wallet, withdrawal, project
    entity_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=True)
    actor_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ReconciliationRecord(Base):
    """Payment confirmed by the gateway whose ledger write did not commit."""
    __tablename__ = "reconciliation_records"

    id = Column(Integer, primary_key=True, index=True)
    operation = Column(String, nullable=False)
    reference = Column(String, nullable=False)  # invoice number or withdrawal id
    gateway_reference = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    error = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
