import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Response
from sqlalchemy.orm import Session

from auth import Account, resolve_account
from calculations import (
    calculate_manual_invoice_amount,
    calculate_project_progress,
    calculate_remaining_budget,
    calculate_upfront_amount,
    final_payout_status,
    validate_payment_state,
)
from config import DEFAULT_CURRENCY
from crud import (
    get_invoices,
    get_notifications,
    get_or_create_wallet,
    get_transactions,
    mark_all_read,
    mark_notification_read,
)
from database import get_db
from errors import ErrorCode, InvalidInputError, NotFoundError, ok
from gateway import get_gateway
from ledger import validate_currency
from payments import (
    calculation_constants,
    execute_final_payment,
    execute_payment,
    execute_upfront_payment,
    new_correlation_id,
    trigger_payment,
)
from projects import (
    activate_project,
    add_milestone,
    add_task,
    approve_task,
    create_project,
    load_participant_project,
    load_visible_invoice,
    manual_invoice,
    milestone_invoice,
    send_invoice,
    send_reminder,
    submit_task,
)
from schemas import (
    dump,
    CalculateRequest,
    InvoiceActionRequest,
    InvoiceOut,
    ManualInvoiceRequest,
    MilestoneCreate,
    MilestoneInvoiceRequest,
    MilestoneOut,
    NotificationOut,
    ProjectActivate,
    ProjectCreate,
    ProjectDetailOut,
    ProjectOut,
    ProjectPaymentRequest,
    TaskCreate,
    TaskOut,
    TransactionOut,
    WalletOut,
    WithdrawRequest,
)
from withdrawals import cancel_withdrawal, execute_withdrawal, request_withdrawal
from worker import dispatch_pending

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def correlation_id(response: Response, x_correlation_id: Optional[str] = Header(default=None)) -> str:
    value = new_correlation_id(x_correlation_id)
    response.headers["X-Correlation-Id"] = value
    return value


def idempotency_key(key: Optional[str] = Header(default=None, alias="Idempotency-Key")) -> Optional[str]:
    return key


def _deliver(background_tasks: BackgroundTasks):
    background_tasks.add_task(dispatch_pending)


# ---------- Payments ----------

@router.post("/payments/trigger", tags=["payments"])
def trigger(
    request: InvoiceActionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    key: Optional[str] = Depends(idempotency_key),
    cid: str = Depends(correlation_id),
):
    data = trigger_payment(db, account, request.invoice_number, key, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/payments/execute", tags=["payments"])
def execute(
    request: InvoiceActionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    gateway=Depends(get_gateway),
    key: Optional[str] = Depends(idempotency_key),
    cid: str = Depends(correlation_id),
):
    data = execute_payment(db, account, request.invoice_number, gateway, key, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/payments/completion/execute-upfront", tags=["completion"])
def execute_upfront(
    request: ProjectPaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    gateway=Depends(get_gateway),
    cid: str = Depends(correlation_id),
):
    data = execute_upfront_payment(db, account, request.project_id, gateway, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/payments/completion/execute-final", tags=["completion"])
def execute_final(
    request: ProjectPaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    gateway=Depends(get_gateway),
    cid: str = Depends(correlation_id),
):
    data = execute_final_payment(db, account, request.project_id, gateway, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/payments/completion/calculate", tags=["completion"])
def calculate(
    request: CalculateRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    kind = request.calculation_type
    if kind == "upfront":
        return ok({"upfrontAmount": calculate_upfront_amount(request.total_budget), **calculation_constants()})
    if kind == "manual_invoice":
        amount = calculate_manual_invoice_amount(request.total_budget, request.total_tasks)
        return ok({"manualInvoiceAmount": amount, **calculation_constants()})

    if request.project_id is None:
        raise InvalidInputError(f"projectId is required for {kind}")
    project = load_participant_project(db, account, request.project_id)
    if kind == "remaining_budget":
        return ok({"projectId": project.id, "remainingBudget": calculate_remaining_budget(db, project)})
    if kind == "validate_state":
        return ok({"projectId": project.id, **validate_payment_state(db, project)})
    return ok({"projectId": project.id, **calculate_project_progress(db, project)})


@router.get("/payments/completion/calculate", tags=["completion"])
def calculation_overview(
    project_id: int = Query(alias="projectId"),
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    project = load_participant_project(db, account, project_id)
    return ok({
        "projectId": project.id,
        "validation": validate_payment_state(db, project),
        "progress": calculate_project_progress(db, project),
        "finalPayout": final_payout_status(db, project),
        "constants": calculation_constants(),
    })


@router.get("/payments/wallet", tags=["wallet"])
def wallet(
    currency: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    user_wallet = get_or_create_wallet(db, account.id, account.user_type, validate_currency(currency, DEFAULT_CURRENCY))
    db.commit()
    return ok({"wallet": dump(WalletOut, user_wallet)})


@router.get("/payments/history", tags=["wallet"])
def history(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    transactions = get_transactions(db, account.id, limit)
    return ok({"transactions": [dump(TransactionOut, t) for t in transactions]})


# ---------- Withdrawals ----------

@router.post("/withdraw", tags=["withdrawals"])
def withdraw(
    request: WithdrawRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    key: Optional[str] = Depends(idempotency_key),
    cid: str = Depends(correlation_id),
):
    data = request_withdrawal(db, account, request.amount, request.currency, request.withdrawal_id, key, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/withdraw/{withdrawal_id}/execute", tags=["withdrawals"])
def withdraw_execute(
    withdrawal_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    gateway=Depends(get_gateway),
    cid: str = Depends(correlation_id),
):
    data = execute_withdrawal(db, account, withdrawal_id, gateway, cid)
    _deliver(background_tasks)
    return ok(data)


@router.post("/withdraw/{withdrawal_id}/cancel", tags=["withdrawals"])
def withdraw_cancel(
    withdrawal_id: str,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
    cid: str = Depends(correlation_id),
):
    return ok(cancel_withdrawal(db, account, withdrawal_id, cid))


# ---------- Projects ----------

@router.post("/projects", status_code=201, tags=["projects"])
def new_project(
    request: ProjectCreate,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    project = create_project(
        db, account, request.title, request.invoicing_method, request.total_budget,
        request.currency, request.commissioner_name, request.freelancer_id,
    )
    return ok({"project": dump(ProjectOut, project)})


@router.get("/projects/{project_id}", tags=["projects"])
def project_detail(
    project_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    project = load_participant_project(db, account, project_id)
    return ok({"project": dump(ProjectDetailOut, project)})


@router.post("/projects/{project_id}/activate", tags=["projects"])
def project_activate(
    project_id: int,
    request: ProjectActivate,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    project = activate_project(db, account, project_id, request.freelancer_id)
    return ok({"project": dump(ProjectOut, project)})


@router.post("/projects/{project_id}/milestones", status_code=201, tags=["projects"])
def project_milestone(
    project_id: int,
    request: MilestoneCreate,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    milestone = add_milestone(db, account, project_id, request.title, request.rate)
    return ok({"milestone": dump(MilestoneOut, milestone)})


@router.post("/projects/{project_id}/tasks", status_code=201, tags=["projects"])
def project_task(
    project_id: int,
    request: TaskCreate,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    task = add_task(db, account, project_id, request.title, request.milestone_id, request.status)
    return ok({"task": dump(TaskOut, task)})


@router.post("/projects/{project_id}/tasks/{task_id}/submit", tags=["projects"])
def task_submit(
    project_id: int,
    task_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    task = submit_task(db, account, project_id, task_id)
    return ok({"task": dump(TaskOut, task)})


@router.post("/projects/{project_id}/tasks/{task_id}/approve", tags=["projects"])
def task_approve(
    project_id: int,
    task_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    task, invoice = approve_task(db, account, project_id, task_id)
    _deliver(background_tasks)
    return ok({"task": dump(TaskOut, task), "invoice": dump(InvoiceOut, invoice)})


# ---------- Invoices ----------

@router.post("/invoices/milestone", status_code=201, tags=["invoices"])
def invoice_milestone(
    request: MilestoneInvoiceRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    invoice = milestone_invoice(db, account, request.project_id, request.milestone_id)
    return ok({"invoice": dump(InvoiceOut, invoice)})


@router.post("/invoices/completion/create-manual", status_code=201, tags=["invoices"])
def invoice_manual(
    request: ManualInvoiceRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    invoice = manual_invoice(db, account, request.project_id, request.task_id)
    return ok({"invoice": dump(InvoiceOut, invoice)})


@router.post("/invoices/{invoice_number}/send", tags=["invoices"])
def invoice_send(
    invoice_number: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    invoice = send_invoice(db, account, invoice_number)
    _deliver(background_tasks)
    return ok({"invoice": dump(InvoiceOut, invoice)})


@router.post("/invoices/{invoice_number}/remind", tags=["invoices"])
def invoice_remind(
    invoice_number: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    invoice, reminder = send_reminder(db, account, invoice_number)
    _deliver(background_tasks)
    return ok({"invoice": dump(InvoiceOut, invoice), "reminder": reminder})


@router.get("/invoices/{invoice_number}", tags=["invoices"])
def invoice_detail(
    invoice_number: str,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    invoice = load_visible_invoice(db, account, invoice_number)
    return ok({"invoice": dump(InvoiceOut, invoice)})


@router.get("/invoices", tags=["invoices"])
def invoice_list(
    project_id: Optional[int] = Query(default=None, alias="projectId"),
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    if project_id is not None:
        load_participant_project(db, account, project_id)
        invoices = get_invoices(db, project_id=project_id)
    else:
        invoices = get_invoices(db, user_id=account.id)
    return ok({"invoices": [dump(InvoiceOut, invoice) for invoice in invoices]})


# ---------- Notifications ----------

@router.get("/notifications", tags=["notifications"])
def list_notifications(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    notifications = get_notifications(db, account.id, unread_only=unread_only)
    return ok({"notifications": [dump(NotificationOut, n) for n in notifications]})


@router.post("/notifications/read-all", tags=["notifications"])
def read_all_notifications(
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    mark_all_read(db, account.id)
    return ok({"message": "All notifications marked as read"})


@router.post("/notifications/{notification_id}/read", tags=["notifications"])
def read_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(resolve_account),
):
    notification = mark_notification_read(db, notification_id, account.id)
    if not notification:
        raise NotFoundError(ErrorCode.NOT_FOUND, "Notification not found")
    return ok({"notification": dump(NotificationOut, notification)})
