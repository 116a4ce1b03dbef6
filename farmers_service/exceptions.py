"""
Exception hierarchy for the bulk onboarding pipeline.

Operation-level errors derive from ``BulkOperationError`` and are surfaced to
the caller synchronously. Per-record collaborator errors derive from
``FarmerCreationError`` and never leave the worker pool; they end up on a
record outcome instead.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BulkOperationError(Exception):
    """Base class for operation-level failures.

    Attributes:
        message: human readable description
        code: stable machine readable identifier used in API responses
        context: extra structured data for logs and responses
    """

    code = "bulk_operation_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class FormatError(BulkOperationError):
    """Uploaded payload cannot be parsed at all."""

    code = "format_error"


class UnsupportedFormatError(BulkOperationError):
    code = "unsupported_format"


class AuthorizationError(BulkOperationError):
    """The authorization collaborator denied the bulk operation."""

    code = "forbidden"


class AuthorizationUnavailableError(BulkOperationError):
    """The authorization collaborator could not answer."""

    code = "authorization_unavailable"


class OperationNotFoundError(BulkOperationError):
    code = "not_found"


class OperationAlreadyCompleteError(BulkOperationError):
    code = "already_complete"


class OperationNotRetryableError(BulkOperationError):
    code = "not_retryable"


class InvalidRetrySelectionError(BulkOperationError):
    code = "invalid_retry_selection"


class SyncLimitExceededError(BulkOperationError):
    code = "sync_limit_exceeded"


class FarmerCreationError(Exception):
    """Base class for errors returned by the farmer creation collaborator."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFarmerError(FarmerCreationError):
    """Downstream failure that may succeed on a later attempt (timeouts, 5xx, 429)."""


class PermanentFarmerError(FarmerCreationError):
    """Downstream rejected the record for a reason a retry will not fix (duplicate, bad data)."""


__all__ = [
    "BulkOperationError",
    "FormatError",
    "UnsupportedFormatError",
    "AuthorizationError",
    "AuthorizationUnavailableError",
    "OperationNotFoundError",
    "OperationAlreadyCompleteError",
    "OperationNotRetryableError",
    "InvalidRetrySelectionError",
    "SyncLimitExceededError",
    "FarmerCreationError",
    "TransientFarmerError",
    "PermanentFarmerError",
]
