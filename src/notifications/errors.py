"""Exception hierarchy for the notification engine.

Policy denials are not errors: the gate returns an ``AdmitDecision`` and the
caller logs and drops the candidate notification.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes."""
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    TEMPLATE_LOCKED = "template_locked"
    TRANSIENT_DELIVERY_FAILURE = "transient_delivery_failure"
    INVALID_ENDPOINT = "invalid_endpoint"
    SCHEDULER_ITEM_FAILURE = "scheduler_item_failure"
    INTERNAL_ERROR = "internal_error"


class NotificationError(Exception):
    """Base exception for all notification engine errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or []

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(NotificationError):
    """Raised when a public call is missing required fields or has bad values."""

    def __init__(self, message: str = "Validation failed", field: Optional[str] = None):
        details = [{"field": field, "issue": message}] if field else None
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)
        self.field = field


class NotFoundError(NotificationError):
    """Raised when a referenced record does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            ErrorCode.NOT_FOUND,
            [{"resource_type": resource_type, "resource_id": resource_id}],
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class TemplateLockedError(NotificationError):
    """Raised when modifying a builtin or history-referenced template."""

    def __init__(self, template_id: str, reason: str):
        super().__init__(
            f"Template '{template_id}' cannot be modified: {reason}",
            ErrorCode.TEMPLATE_LOCKED,
        )
        self.template_id = template_id


class TransientDeliveryFailure(NotificationError):
    """Gateway timeout or 5xx-equivalent. Retried up to max_attempts."""

    def __init__(self, message: str, result: Any = None, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.TRANSIENT_DELIVERY_FAILURE)
        self.result = result
        self.status_code = status_code


class InvalidEndpoint(NotificationError):
    """Gateway confirmed the endpoint or token is permanently unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.INVALID_ENDPOINT)
        self.status_code = status_code


class SchedulerItemFailure(NotificationError):
    """A scheduled occurrence could not be promoted to the delivery queue."""

    def __init__(self, schedule_id: str, reason: str):
        super().__init__(
            f"Scheduled notification {schedule_id} failed: {reason}",
            ErrorCode.SCHEDULER_ITEM_FAILURE,
        )
        self.schedule_id = schedule_id
        self.reason = reason
