"""Error codes and the response envelope shared by every route.

Success: ``{"success": true, "data": {...}}``
Failure: ``{"success": false, "error": {"code": ..., "message": ...}}``
"""
from typing import Any, Optional
from fastapi import status


class ErrorCode:
    # Authentication/Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    FORBIDDEN_USER_TYPE = "FORBIDDEN_USER_TYPE"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Resources
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    MILESTONE_NOT_FOUND = "MILESTONE_NOT_FOUND"
    WITHDRAWAL_NOT_FOUND = "WITHDRAWAL_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"

    # Business logic
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    PAYMENT_ALREADY_PROCESSED = "PAYMENT_ALREADY_PROCESSED"
    PAYMENT_NOT_ELIGIBLE = "PAYMENT_NOT_ELIGIBLE"
    BUDGET_INTEGRITY_VIOLATION = "BUDGET_INTEGRITY_VIOLATION"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    IDEMPOTENCY_KEY_REUSED = "IDEMPOTENCY_KEY_REUSED"
    REMINDER_TOO_SOON = "REMINDER_TOO_SOON"

    # Downstream / system
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    PAYMENT_RECONCILIATION_REQUIRED = "PAYMENT_RECONCILIATION_REQUIRED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ApiError(Exception):
    """Business or boundary failure that maps onto an error envelope."""

    retryable = False

    def __init__(self, code: str, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    def __repr__(self):
        return f"{type(self).__name__}({self.code!r}, {self.message!r}, {self.status_code})"


class NotFoundError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, status.HTTP_404_NOT_FOUND)


class ForbiddenError(ApiError):
    def __init__(self, message: str = "Access denied", code: str = ErrorCode.FORBIDDEN):
        super().__init__(code, message, status.HTTP_403_FORBIDDEN)


class ConflictError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, status.HTTP_409_CONFLICT)


class InvalidInputError(ApiError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_INPUT, message, status.HTTP_400_BAD_REQUEST)


class GatewayError(ApiError):
    """Gateway declined or failed before moving money. Safe to retry."""

    retryable = True

    def __init__(self, message: str = "Payment gateway failure", code: str = ErrorCode.PAYMENT_GATEWAY_ERROR,
                 status_code: int = status.HTTP_502_BAD_GATEWAY):
        super().__init__(code, message, status_code)


class GatewayTimeout(GatewayError):
    def __init__(self, message: str = "Payment gateway timed out"):
        super().__init__(message, ErrorCode.SERVICE_UNAVAILABLE, status.HTTP_503_SERVICE_UNAVAILABLE)


class ReconciliationRequired(ApiError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.PAYMENT_RECONCILIATION_REQUIRED, message, status.HTTP_500_INTERNAL_SERVER_ERROR)


def ok(data: Optional[dict] = None) -> dict:
    return {"success": True, "data": data or {}}


def err(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}


def error_for_status(status_code: int) -> str:
    """Envelope code for a bare HTTPException raised by FastAPI or a dependency."""
    mapping: dict[int, Any] = {
        status.HTTP_400_BAD_REQUEST: ErrorCode.VALIDATION_ERROR,
        status.HTTP_401_UNAUTHORIZED: ErrorCode.UNAUTHORIZED,
        status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
        status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
        status.HTTP_405_METHOD_NOT_ALLOWED: ErrorCode.NOT_FOUND,
        status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
    }
    if status_code in mapping:
        return mapping[status_code]
    # Remaining client errors are problems with the request itself
    if 400 <= status_code < 500:
        return ErrorCode.VALIDATION_ERROR
    return ErrorCode.INTERNAL_ERROR
