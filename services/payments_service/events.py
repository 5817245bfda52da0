import json
import logging
import pika
from sqlalchemy.orm import Session
from config import RABBITMQ_URL, EVENTS_QUEUE
from models import OutboxEvent

logger = logging.getLogger(__name__)

INVOICE_SENT = "invoice.sent"
INVOICE_PAID = "invoice.paid"
UPFRONT_PAID = "completion.upfront_payment"
FINAL_PAID = "completion.final_payment"
INVOICE_OVERDUE = "invoice.overdue"
INVOICE_REMINDER = "invoice.reminder"
PROJECT_COMPLETED = "project.completed"
WITHDRAWAL_REQUESTED = "withdrawal.requested"
WITHDRAWAL_PAID = "withdrawal.paid"
TASK_APPROVED = "task.approved"


def enqueue_event(db: Session, event_type: str, data: dict) -> OutboxEvent:
    """Stage an event in the caller's transaction; the worker delivers it after commit."""
    event = OutboxEvent(event_type=event_type, payload=data)
    db.add(event)
    return event


def publish_event(event_type: str, data: dict):
    """Publish to the durable RabbitMQ events queue. Raises on broker failure."""
    if not RABBITMQ_URL:
        return
    params = pika.URLParameters(RABBITMQ_URL)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.queue_declare(queue=EVENTS_QUEUE, durable=True)
        channel.basic_publish(
            exchange='',
            routing_key=EVENTS_QUEUE,
            body=json.dumps({"type": event_type, "data": data}),
            properties=pika.BasicProperties(delivery_mode=2)
        )
    finally:
        connection.close()
