"""
Typed failures raised by the ledger core.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so
an outer transport can tell "send the same request again" apart from
"this will never succeed".
"""

from typing import Any, Optional


class LedgerError(Exception):
    status_code = 500
    default_code = "LEDGER_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(LedgerError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class InsufficientBalanceError(LedgerError):
    status_code = 422
    default_code = "INSUFFICIENT_BALANCE"


class DailyLimitExceededError(LedgerError):
    status_code = 422
    default_code = "DAILY_LIMIT_EXCEEDED"


class SelfTransferError(LedgerError):
    status_code = 400
    default_code = "SELF_TRANSFER_NOT_ALLOWED"


class InvalidStatusTransitionError(LedgerError):
    status_code = 409
    default_code = "INVALID_STATUS_TRANSITION"


class NotFoundError(LedgerError):
    status_code = 404
    default_code = "NOT_FOUND"


class AccountNotActiveError(LedgerError):
    status_code = 403
    default_code = "ACCOUNT_NOT_ACTIVE"


class GatewayError(LedgerError):
    status_code = 502
    default_code = "GATEWAY_ERROR"
    retryable = True


class GatewayTimeoutError(GatewayError):
    """The request may have reached the gateway; its outcome is unknown."""

    default_code = "GATEWAY_TIMEOUT"


class InternalError(LedgerError):
    status_code = 500
    default_code = "INTERNAL_ERROR"
    retryable = True
