import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field, model_validator

from farmers_service.utils.bulk_enums import OperationStatus, is_terminal


class BulkProcessingOptions(BaseModel):
    validate_only: bool = False
    chunk_size: Optional[int] = Field(default=None, ge=1, le=10000)
    max_concurrency: Optional[int] = Field(default=None, ge=1, le=64)
    notification_webhook: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BulkFarmerRequest(BaseModel):
    fpo_org_id: str = Field(min_length=1)
    input_format: str = "json"
    processing_mode: str = "async"
    # base64 encoded file contents; alternative to inline ``farmers``
    data: Optional[str] = None
    farmers: Optional[List[Dict[str, Any]]] = None
    options: BulkProcessingOptions = Field(default_factory=BulkProcessingOptions)

    @model_validator(mode="after")
    def _require_payload(self):
        if self.data is None and self.farmers is None:
            raise ValueError("Either data or farmers must be provided")
        return self


class ValidateBulkRequest(BaseModel):
    fpo_org_id: str = Field(min_length=1)
    input_format: str = "json"
    data: Optional[str] = None
    farmers: Optional[List[Dict[str, Any]]] = None

    @model_validator(mode="after")
    def _require_payload(self):
        if self.data is None and self.farmers is None:
            raise ValueError("Either data or farmers must be provided")
        return self


class RetryBulkRequest(BaseModel):
    retry_all: bool = False
    record_indices: Optional[List[int]] = None
    processing_mode: Optional[str] = None
    options: BulkProcessingOptions = Field(default_factory=BulkProcessingOptions)

    @model_validator(mode="after")
    def _require_selection(self):
        if not self.retry_all and not self.record_indices:
            raise ValueError("Either retry_all or record_indices must be provided")
        return self


class CancelBulkRequest(BaseModel):
    reason: Optional[str] = None


class ProgressInfo(BaseModel):
    total: int
    processed: int
    successful: int
    failed: int
    percentage: float

    @classmethod
    def from_counts(cls, total: int, processed: int, successful: int, failed: int) -> "ProgressInfo":
        percentage = 0.0 if total <= 0 else min(100.0, processed / total * 100)
        return cls(
            total=total,
            processed=processed,
            successful=successful,
            failed=failed,
            percentage=round(percentage, 2),
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without a zone; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BulkOperationStatus(BaseModel):
    id: uuid.UUID
    fpo_org_id: str
    requested_by: str
    requested_at: datetime
    input_format: str
    processing_mode: str
    status: OperationStatus
    progress: ProgressInfo
    parent_operation_id: Optional[uuid.UUID] = None
    cancel_requested: bool = False
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    # failed record counts keyed by error kind
    error_summary: Dict[str, int] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    estimated_completion: Optional[datetime] = None
    can_retry: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status_url: str

    @classmethod
    def from_model(
        cls,
        operation,
        status_url: str,
        *,
        live_progress=None,
        error_summary: Optional[Dict[str, int]] = None,
        now: Optional[datetime] = None,
    ) -> "BulkOperationStatus":
        """Build a status view of ``operation``.

        ``live_progress`` (anything with total/processed/successful/failed) is
        the running tracker's snapshot and takes precedence over the stored
        counters.
        """
        now = now or datetime.now(timezone.utc)
        counts = live_progress if live_progress is not None else operation
        progress = ProgressInfo.from_counts(
            counts.total or 0,
            counts.processed or 0,
            counts.successful or 0,
            counts.failed or 0,
        )
        started_at = _as_utc(operation.started_at)
        finished_at = _as_utc(operation.finished_at)

        processing_time_ms = None
        estimated_completion = None
        if started_at is not None:
            elapsed = ((finished_at or now) - started_at).total_seconds()
            processing_time_ms = max(0, int(elapsed * 1000))
            if operation.status == OperationStatus.PROCESSING.value and progress.processed > 0 and elapsed > 0:
                rate = progress.processed / elapsed
                remaining = max(0, progress.total - progress.processed)
                estimated_completion = now + timedelta(seconds=remaining / rate)

        return cls(
            id=operation.id,
            fpo_org_id=operation.fpo_org_id,
            requested_by=operation.requested_by,
            requested_at=operation.requested_at,
            input_format=operation.input_format,
            processing_mode=operation.processing_mode,
            status=operation.status,
            progress=progress,
            parent_operation_id=operation.parent_operation_id,
            cancel_requested=bool(operation.cancel_requested),
            error_kind=operation.error_kind,
            error_detail=operation.error_detail,
            error_summary=error_summary or {},
            started_at=started_at,
            finished_at=finished_at,
            processing_time_ms=processing_time_ms,
            estimated_completion=estimated_completion,
            can_retry=is_terminal(operation.status) and progress.failed > 0,
            metadata=(operation.options or {}).get("metadata") or {},
            status_url=status_url,
        )


class RecordOutcome(BaseModel):
    record_index: int
    status: str
    created_farmer_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    attempts: int = 0
    model_config = ConfigDict(from_attributes=True)


class OperationDescriptor(BaseModel):
    operation_id: uuid.UUID
    status: OperationStatus
    status_url: str
    result_url: str
    message: str
    operation: BulkOperationStatus
    # populated for synchronous runs only
    outcomes: Optional[List[RecordOutcome]] = None


class ValidationIssue(BaseModel):
    field: str
    code: str
    message: str


class ValidationReport(BaseModel):
    is_valid: bool
    total_records: int
    valid_records: int
    invalid_records: int
    errors: Dict[int, List[ValidationIssue]] = Field(default_factory=dict)

    def issues_for(self, record_index: int) -> List[ValidationIssue]:
        return self.errors.get(record_index, [])


class TemplateField(BaseModel):
    name: str
    display_name: str
    required: bool
    example: str
    description: str
    format: Optional[str] = None


class BulkTemplate(BaseModel):
    format: str
    file_name: str
    # base64 encoded file contents
    content: str
    fields: List[TemplateField]
    instructions: str
