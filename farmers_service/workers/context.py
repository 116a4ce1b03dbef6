"""Per-operation execution context shared by the orchestrator and the worker pool."""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from farmers_service.utils.bulk_enums import ProcessingMode
from farmers_service.utils.bulk_settings import BulkSettings
from farmers_service.workers.progress import OutcomeArena, ProgressTracker


@dataclass(frozen=True)
class RunSettings:
    """Execution knobs for one operation: global settings with request overrides applied."""

    max_concurrency: int
    chunk_size: int
    max_attempts: int
    retry_backoff_seconds: float
    record_timeout_seconds: float
    lease_seconds: float = 60.0
    cancel_poll_seconds: float = 1.0

    @classmethod
    def resolve(cls, settings: BulkSettings, options: Optional[Dict[str, Any]] = None) -> "RunSettings":
        options = options or {}
        return cls(
            max_concurrency=options.get("max_concurrency") or settings.max_concurrency,
            chunk_size=options.get("chunk_size") or settings.chunk_size,
            max_attempts=settings.max_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            record_timeout_seconds=settings.record_timeout_seconds,
            lease_seconds=settings.lease_seconds,
            cancel_poll_seconds=settings.cancel_poll_seconds,
        )


@dataclass
class OperationContext:
    """Everything a run of one operation needs; never shared between operations."""

    operation_id: uuid.UUID
    fpo_org_id: str
    requested_by: str
    processing_mode: ProcessingMode
    settings: RunSettings
    tracker: ProgressTracker
    organization_id: Optional[str] = None
    # raw input fields per record index, stored on each outcome for retries
    inputs: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    notification_webhook: Optional[str] = None
    # lease holder id of the process running this context
    lease_owner: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def arena(self) -> OutcomeArena:
        return self.tracker.arena

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        self.cancel_event.set()

    def input_for(self, record_index: int) -> Optional[Dict[str, Any]]:
        return self.inputs.get(record_index)
