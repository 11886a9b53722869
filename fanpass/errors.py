"""
Error taxonomy shared by the domain modules and the HTTP boundary.

Domain code raises these; `server.py` installs one handler that renders
them as `{"ok": false, "error": ..., "detail": ...}` with the matching
status code. Expected business outcomes (duplicate scans, full events,
insufficient balance) are `ConflictError`s carrying a `FailureKind` so the
client can tell them apart.
"""
from __future__ import annotations
import enum
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class FailureKind(str, enum.Enum):
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    DUPLICATE_REFERENCE = "DuplicateReference"
    BELOW_MINIMUM = "BelowMinimum"
    UNVERIFIED_ACCOUNT = "UnverifiedAccount"
    PENDING_EXISTS = "PendingExists"
    EVENT_FULL = "EventFull"
    EVENT_CLOSED = "EventClosed"
    AMOUNT_MISMATCH = "AmountMismatch"
    ALREADY_PROCESSED = "AlreadyProcessed"
    INVALID_STATE = "InvalidState"
    PAYMENT_FAILED = "PaymentFailed"


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str = "", *,
                 extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": False, "error": self.code, "detail": self.detail}
        out.update(self.extra)
        return out


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class AuthError(AppError):
    status_code = 401
    code = "auth_required"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409

    def __init__(self, kind: FailureKind, detail: str = "", *,
                 status_code: Optional[int] = None,
                 extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(detail or kind.value, extra=extra)
        self.kind = kind
        self.code = kind.value
        if status_code is not None:
            self.status_code = status_code


class UpstreamError(AppError):
    status_code = 503
    code = "upstream_unavailable"
    retryable = True


class InvariantError(AppError):
    """A stated invariant was found broken. Always a bug, never user error."""
    status_code = 500
    code = "invariant_violation"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.context = context
        logger.critical("INVARIANT VIOLATION: %s | context=%r",
                        detail, context)
