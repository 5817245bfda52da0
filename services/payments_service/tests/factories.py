import threading

from conftest import COMMISSIONER_ID, FREELANCER_ID
from models import Invoice, InvoiceStatus, InvoiceType, InvoicingMethod, Project, ProjectStatus, Task


def make_project(db, total_budget=2000.0, method=InvoicingMethod.COMPLETION, tasks=0, approved=False, **fields):
    project = Project(
        commissioner_id=fields.pop("commissioner_id", COMMISSIONER_ID),
        commissioner_name=fields.pop("commissioner_name", "Jane Doe"),
        freelancer_id=fields.pop("freelancer_id", FREELANCER_ID),
        title=fields.pop("title", "Landing page"),
        invoicing_method=method,
        total_budget=total_budget,
        currency="USD",
        status=fields.pop("status", ProjectStatus.ACTIVE),
        **fields,
    )
    db.add(project)
    db.flush()
    for i in range(tasks):
        db.add(Task(project_id=project.id, title=f"Task {i + 1}", approved=approved))
    db.commit()
    return project


def make_invoice(db, project, invoice_type, amount, status=InvoiceStatus.PAID, number=None, **fields):
    invoice = Invoice(
        invoice_number=number or f"T-{db.query(Invoice).count() + 1:03d}",
        project_id=project.id,
        freelancer_id=project.freelancer_id,
        commissioner_id=project.commissioner_id,
        invoice_type=invoice_type,
        status=status,
        total_amount=amount,
        currency=project.currency,
        line_items=[{"description": invoice_type.value, "rate": amount}],
        **fields,
    )
    db.add(invoice)
    db.commit()
    return invoice


def upfront(db, project, status=InvoiceStatus.PAID):
    return make_invoice(db, project, InvoiceType.COMPLETION_UPFRONT, round(project.total_budget * 0.12, 2), status)


def run_concurrently(*calls):
    """Start every call at the same moment; returns each result or the exception it raised."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def run(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as exc:
            results[index] = exc

    threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results
