"""
Enumerations shared by the bulk onboarding pipeline.

Values are persisted as plain strings; the enums are resolved once at the
request boundary so the rest of the pipeline works with tagged values only.
"""
from enum import Enum
from typing import FrozenSet


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ProcessingMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"
    BATCH = "batch"


class InputFormat(str, Enum):
    CSV = "csv"
    EXCEL = "excel"
    JSON = "json"


class RecordStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNEXPECTED = "unexpected"
    # operation-level
    FORMAT = "format"
    AUTHORIZATION = "authorization"
    SYNC_LIMIT = "sync_limit"
    INTERRUPTED = "interrupted"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    EXCEL = "excel"


TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    OperationStatus.COMPLETED.value,
    OperationStatus.FAILED.value,
    OperationStatus.CANCELLED.value,
})
ACTIVE_STATUSES: FrozenSet[str] = frozenset({
    OperationStatus.PENDING.value,
    OperationStatus.PROCESSING.value,
})

# Aliases accepted from clients for the spreadsheet format.
_FORMAT_ALIASES = {
    "csv": InputFormat.CSV,
    "text/csv": InputFormat.CSV,
    "excel": InputFormat.EXCEL,
    "xlsx": InputFormat.EXCEL,
    "spreadsheet": InputFormat.EXCEL,
    "json": InputFormat.JSON,
}


def resolve_input_format(value: str) -> InputFormat:
    """Map a client supplied format tag onto ``InputFormat``; raise ValueError if unknown."""
    key = (value or "").strip().lower()
    if key not in _FORMAT_ALIASES:
        raise ValueError(f"Unsupported input format '{value}'. Allowed: csv, excel, json")
    return _FORMAT_ALIASES[key]


def resolve_export_format(value: str) -> ExportFormat:
    key = (value or "").strip().lower()
    if key in {"xlsx", "spreadsheet"}:
        key = "excel"
    try:
        return ExportFormat(key)
    except ValueError:
        raise ValueError(f"Unsupported export format '{value}'. Allowed: csv, json, excel") from None


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
