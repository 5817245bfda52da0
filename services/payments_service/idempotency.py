"""Idempotency records keyed by (operation, user, idempotency_key) with a TTL.

A record also stores a fingerprint of the request it answered. Replaying the
key with different request fields is refused instead of returning a response
that belongs to another request.
"""
import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Optional

from fastapi import status
from sqlalchemy.orm import Session

from config import IDEMPOTENCY_TTL_HOURS
from errors import ApiError, ErrorCode
from locks import entity_lock
from models import IdempotencyRecord, utcnow

logger = logging.getLogger(__name__)

OP_TRIGGER = "payments.trigger"
OP_EXECUTE = "payments.execute"
OP_WITHDRAW = "payments.withdraw"


def fingerprint(**fields) -> str:
    payload = json.dumps(fields, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def lookup(db: Session, operation: str, key: Optional[str], user_id: int, request_fingerprint: str) -> Optional[dict]:
    """Stored response for this user's unexpired key, else None."""
    if not key:
        return None
    record = db.query(IdempotencyRecord).filter(
        IdempotencyRecord.operation == operation,
        IdempotencyRecord.user_id == user_id,
        IdempotencyRecord.idempotency_key == key,
    ).first()
    if record is None:
        return None
    if record.expires_at <= utcnow():
        db.delete(record)
        db.commit()
        return None
    if record.fingerprint != request_fingerprint:
        raise ApiError(
            ErrorCode.IDEMPOTENCY_KEY_REUSED,
            f"Idempotency key '{key}' was already used with a different request",
            status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    logger.info("Idempotent replay for %s key=%s user=%s", operation, key, user_id)
    return record.response


def remember(db: Session, operation: str, key: Optional[str], response: dict, user_id: int,
             request_fingerprint: str):
    """Stage a record in the caller's transaction; committed with the state change."""
    if not key:
        return
    now = utcnow()
    db.add(IdempotencyRecord(
        operation=operation,
        idempotency_key=key,
        user_id=user_id,
        fingerprint=request_fingerprint,
        response=response,
        created_at=now,
        expires_at=now + timedelta(hours=IDEMPOTENCY_TTL_HOURS),
    ))


def purge_expired(db: Session) -> int:
    removed = db.query(IdempotencyRecord).filter(IdempotencyRecord.expires_at <= utcnow()).delete()
    db.commit()
    return removed


@contextmanager
def idempotent(db: Session, operation: str, key: Optional[str], user_id: int, request_fingerprint: str):
    """Hold the key for the whole operation and yield its stored response, if any.

    Requests sharing a key run one after the other, so a retry that arrives
    while the first attempt is still running gets the first attempt's result.
    """
    if not key:
        yield None
        return
    with entity_lock("idempotency", (operation, user_id, key)):
        yield lookup(db, operation, key, user_id, request_fingerprint)
