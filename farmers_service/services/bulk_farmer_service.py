"""
Bulk farmer onboarding orchestrator.

``BulkFarmerService`` owns the lifecycle of a bulk operation: it persists the
operation before any work happens, parses and authorizes once, picks the
execution strategy (sync, async or chunked batch) and is the only component
that moves an operation between statuses. ``OperationRunner`` is the part of
it that executes a run; it opens its own sessions so background runs outlive
the request that started them.

Status machine::

    PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED
    PENDING -> FAILED      (format, sync limit or authorization rejection)
    PENDING -> CANCELLED   (cancelled before processing started)

Every active operation carries a lease naming the process running it. The
running process renews it; startup recovery and the periodic sweep only take
over operations whose lease is unset or expired, and writes from a process
that lost its lease are rejected by the store.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from sqlalchemy.orm import Session

from farmers_service import audit
from farmers_service.audit import AuditAction, AuditStatus
from farmers_service.db import crud, schemas
from farmers_service.db.database import get_session_factory, session_scope
from farmers_service.db.models import now_utc
from farmers_service.exceptions import (
    AuthorizationError,
    AuthorizationUnavailableError,
    BulkOperationError,
    FormatError,
    InvalidRetrySelectionError,
    OperationAlreadyCompleteError,
    OperationNotFoundError,
    OperationNotRetryableError,
    SyncLimitExceededError,
    UnsupportedFormatError,
)
from farmers_service.services import farmer_parser
from farmers_service.services.authorization import AuthorizationGate
from farmers_service.services.collaborators import (
    AAAClient,
    FarmerCreator,
    FarmerServiceClient,
    PermissionChecker,
    post_webhook,
)
from farmers_service.services.farmer_parser import ParsedRecord
from farmers_service.services.farmer_validator import FarmerRecord, RecordValidator, describe_issues
from farmers_service.services.result_export import (
    TEMPLATE_FIELDS,
    TEMPLATE_INSTRUCTIONS,
    ExportFile,
    export_outcomes,
    render_template,
)
from farmers_service.utils.bulk_enums import (
    ACTIVE_STATUSES,
    ErrorKind,
    InputFormat,
    OperationStatus,
    ProcessingMode,
    RecordStatus,
    is_terminal,
    resolve_export_format,
    resolve_input_format,
)
from farmers_service.utils.bulk_settings import BulkSettings, get_bulk_settings
from farmers_service.workers.async_bulk_operations import AsyncBulkOperationsManager, get_bulk_operations_manager
from farmers_service.workers.context import OperationContext, RunSettings
from farmers_service.workers.pool import WorkerPool
from farmers_service.workers.progress import OutcomeArena, ProgressTracker, RecordResult

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Dict[str, Any]], Any]


@dataclass(frozen=True)
class Requester:
    """Who asked for an operation and in which organization context."""

    user_id: str
    org_id: str = ""

    def scoped_to(self, fpo_org_id: str) -> "Requester":
        """Without an explicit org context the FPO itself is the organization."""
        if self.org_id:
            return self
        return Requester(user_id=self.user_id, org_id=fpo_org_id)


def resolve_processing_mode(value: Optional[str]) -> ProcessingMode:
    key = (value or "").strip().lower()
    if key in {"synchronous"}:
        key = "sync"
    elif key in {"asynchronous"}:
        key = "async"
    elif key in {"chunked", "chunked_batch", "chunked-batch"}:
        key = "batch"
    try:
        return ProcessingMode(key)
    except ValueError:
        raise UnsupportedFormatError(
            f"Unsupported processing mode '{value}'. Allowed: sync, async, batch",
            context={"processing_mode": value},
        ) from None


def _serialize_records(records: Sequence[ParsedRecord]) -> List[Dict[str, Any]]:
    return [
        {"index": record.index, "fields": dict(record.fields), "source_row": record.source_row}
        for record in records
    ]


def _deserialize_records(items: Optional[Sequence[Dict[str, Any]]]) -> List[ParsedRecord]:
    return [
        ParsedRecord(index=int(item["index"]), fields=dict(item.get("fields") or {}), source_row=item.get("source_row"))
        for item in items or []
    ]


class OperationRunner:
    """Executes one operation run: validation outcomes, worker dispatch, final status."""

    def __init__(
        self,
        creator: FarmerCreator,
        session_factory: Callable[[], Session],
        *,
        validator: RecordValidator,
        status_url_prefix: str,
        notifier: Notifier = post_webhook,
    ):
        self._session_factory = session_factory
        self._pool = WorkerPool(creator, stored_cancel_check=self._stored_cancel_requested)
        self._validator = validator
        self._status_url_prefix = status_url_prefix
        self._notifier = notifier

    async def run(self, context: OperationContext, records: Sequence[ParsedRecord], *, resume: bool = False) -> Optional[str]:
        """Drive ``context`` to a terminal status and return it; None if the run never started."""
        operation_id = context.operation_id
        heartbeat = asyncio.create_task(self._keep_lease(context)) if context.lease_owner else None
        try:
            if not resume and not self._start(context):
                logger.info("Bulk operation %s is no longer PENDING here; run skipped", operation_id)
                return None
            logger.info(
                "Bulk operation %s processing %d record(s) in %s mode",
                operation_id, len(context.arena), context.processing_mode.value,
            )
            valid_records = self._record_validation_failures(context, records)
            for chunk in self._chunks(context, valid_records):
                if self._cancel_observed(context):
                    break
                await self._pool.run(context, chunk)
            status = self._finish(context)
        except asyncio.CancelledError:
            self._release_lease(context)
            raise
        except Exception as exc:
            logger.exception("Bulk operation %s aborted", operation_id)
            status = self._fail(context, exc)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            context.tracker.close()
        await self._notify(context)
        return status

    def _start(self, context: OperationContext) -> bool:
        with session_scope(self._session_factory) as db:
            return crud.transition_bulk_operation(
                db,
                context.operation_id,
                from_statuses=[OperationStatus.PENDING.value],
                to_status=OperationStatus.PROCESSING.value,
                held_by=context.lease_owner,
                started_at=now_utc(),
            )

    async def _keep_lease(self, context: OperationContext) -> None:
        """Renew the run's lease until cancelled; a lost lease stops further dispatch."""
        lease_seconds = context.settings.lease_seconds
        while True:
            await asyncio.sleep(lease_seconds / 3)
            with session_scope(self._session_factory) as db:
                renewed = crud.renew_bulk_operation_lease(
                    db,
                    context.operation_id,
                    owner=context.lease_owner,
                    expires_at=now_utc() + timedelta(seconds=lease_seconds),
                )
            if not renewed:
                logger.warning(
                    "Bulk operation %s is no longer leased to %s; stopping dispatch",
                    context.operation_id, context.lease_owner,
                )
                context.request_cancel()
                return

    def _release_lease(self, context: OperationContext) -> None:
        if not context.lease_owner:
            return
        with session_scope(self._session_factory) as db:
            crud.release_bulk_operation_lease(db, context.operation_id, owner=context.lease_owner)
        logger.info("Bulk operation %s interrupted; lease released for recovery", context.operation_id)

    def _stored_cancel_requested(self, operation_id: uuid.UUID) -> bool:
        with session_scope(self._session_factory) as db:
            operation = crud.get_bulk_operation(db, operation_id)
            return operation is not None and bool(operation.cancel_requested)

    def _record_validation_failures(
        self, context: OperationContext, records: Sequence[ParsedRecord]
    ) -> List[FarmerRecord]:
        """Record invalid records as FAILED and return the valid ones this run still owns."""
        # duplicates are judged against the whole input, even on a resumed run
        validation = self._validator.validate(records)
        arena = context.arena
        for index, issues in sorted(validation.report.errors.items()):
            if index in arena and not arena.is_filled(index):
                context.tracker.record(RecordResult.failure(
                    index, ErrorKind.VALIDATION, describe_issues(issues), 0, context.input_for(index)
                ))
        return [
            record for record in validation.valid_records
            if record.index in arena and not arena.is_filled(record.index)
        ]

    @staticmethod
    def _chunks(context: OperationContext, records: List[FarmerRecord]) -> Iterator[List[FarmerRecord]]:
        if not records:
            return
        if context.processing_mode is ProcessingMode.BATCH:
            size = context.settings.chunk_size
            for start in range(0, len(records), size):
                yield records[start:start + size]
        else:
            yield records

    def _cancel_observed(self, context: OperationContext) -> bool:
        """Check the in-process flag, then the stored flag set by another process."""
        if context.cancel_requested:
            return True
        if self._stored_cancel_requested(context.operation_id):
            context.request_cancel()
            return True
        return False

    def _finish(self, context: OperationContext) -> str:
        cancelled = self._cancel_observed(context)
        with session_scope(self._session_factory) as db:
            operation = crud.get_bulk_operation(db, context.operation_id)
            if cancelled:
                to_status, fields = OperationStatus.CANCELLED, {}
            elif operation.processed >= operation.total:
                to_status, fields = OperationStatus.COMPLETED, {}
            else:
                to_status = OperationStatus.FAILED
                fields = {
                    "error_kind": ErrorKind.UNEXPECTED.value,
                    "error_detail": f"only {operation.processed} of {operation.total} records were processed",
                }
            moved = crud.transition_bulk_operation(
                db,
                context.operation_id,
                from_statuses=[OperationStatus.PROCESSING.value],
                to_status=to_status.value,
                held_by=context.lease_owner,
                finished_at=now_utc(),
                **fields,
            )
            db.expire_all()
            operation = crud.get_bulk_operation(db, context.operation_id)
            if not moved:
                logger.warning(
                    "Bulk operation %s was finished or taken over elsewhere; status %s",
                    context.operation_id, operation.status,
                )
                return operation.status
            logger.info(
                "Bulk operation %s %s: total=%d processed=%d successful=%d failed=%d",
                context.operation_id, to_status.value, operation.total, operation.processed,
                operation.successful, operation.failed,
            )
            audit.log_bulk_operation(
                db,
                actor=context.requested_by,
                organization_id=context.organization_id,
                bulk_operation_id=context.operation_id,
                action=AuditAction.BULK_OPERATION_COMPLETE,
                status=AuditStatus.SUCCESS if to_status is not OperationStatus.FAILED else AuditStatus.FAILURE,
                metadata={
                    "status": to_status.value,
                    "total": operation.total,
                    "processed": operation.processed,
                    "successful": operation.successful,
                    "failed": operation.failed,
                },
            )
            return to_status.value

    def _fail(self, context: OperationContext, exc: Exception) -> str:
        with session_scope(self._session_factory) as db:
            crud.transition_bulk_operation(
                db,
                context.operation_id,
                from_statuses=list(ACTIVE_STATUSES),
                to_status=OperationStatus.FAILED.value,
                held_by=context.lease_owner,
                error_kind=ErrorKind.UNEXPECTED.value,
                error_detail=f"{type(exc).__name__}: {exc}",
                finished_at=now_utc(),
            )
            audit.log_bulk_operation(
                db,
                actor=context.requested_by,
                organization_id=context.organization_id,
                bulk_operation_id=context.operation_id,
                action=AuditAction.BULK_OPERATION_COMPLETE,
                status=AuditStatus.FAILURE,
                reason=str(exc),
            )
            operation = crud.get_bulk_operation(db, context.operation_id)
            return operation.status if operation else OperationStatus.FAILED.value

    async def _notify(self, context: OperationContext) -> None:
        if context.processing_mode is ProcessingMode.SYNC or not context.notification_webhook:
            return
        with session_scope(self._session_factory) as db:
            operation = crud.get_bulk_operation(db, context.operation_id)
            payload = schemas.BulkOperationStatus.from_model(
                operation,
                f"{self._status_url_prefix}/{context.operation_id}",
                error_summary=crud.count_failures_by_kind(db, context.operation_id),
            ).model_dump(mode="json")
        await asyncio.to_thread(self._notifier, context.notification_webhook, payload)


class BulkFarmerService:
    def __init__(
        self,
        db: Session,
        *,
        permission_checker: PermissionChecker,
        farmer_creator: FarmerCreator,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[BulkSettings] = None,
        manager: Optional[AsyncBulkOperationsManager] = None,
        validator: Optional[RecordValidator] = None,
        notifier: Notifier = post_webhook,
    ):
        self.db = db
        self.settings = settings or get_bulk_settings()
        self.session_factory = session_factory or get_session_factory()
        self.manager = manager or get_bulk_operations_manager()
        self.gate = AuthorizationGate(permission_checker)
        self.validator = validator or RecordValidator()
        self.runner = OperationRunner(
            farmer_creator,
            self.session_factory,
            validator=self.validator,
            status_url_prefix=self.settings.status_url_prefix,
            notifier=notifier,
        )

    def status_url(self, operation_id: uuid.UUID) -> str:
        return f"{self.settings.status_url_prefix}/{operation_id}"

    def result_url(self, operation_id: uuid.UUID) -> str:
        return f"{self.status_url(operation_id)}/results"

    def _lease_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or now_utc()) + timedelta(seconds=self.settings.lease_seconds)

    # ------------------------------------------------------------------
    # Start / retry
    # ------------------------------------------------------------------
    async def start_operation(
        self,
        *,
        fpo_org_id: str,
        input_format: str,
        processing_mode: str,
        requester: Requester,
        data: Optional[bytes] = None,
        farmers: Optional[List[Dict[str, Any]]] = None,
        options: Optional[schemas.BulkProcessingOptions] = None,
    ) -> schemas.OperationDescriptor:
        """Accept a bulk request; operation-level failures raise after the operation is marked FAILED."""
        fmt = self._resolve_format(input_format)
        mode = resolve_processing_mode(processing_mode)
        options = options or schemas.BulkProcessingOptions()
        requester = requester.scoped_to(fpo_org_id)
        operation = crud.create_bulk_operation(
            self.db,
            fpo_org_id=fpo_org_id,
            requested_by=requester.user_id,
            organization_id=requester.org_id,
            input_format=fmt.value,
            processing_mode=mode.value,
            options=options.model_dump(exclude_none=True),
            lease_owner=self.manager.owner_id,
            lease_expires_at=self._lease_expiry(),
        )
        logger.info(
            "Created bulk operation %s for %s (format=%s, mode=%s)",
            operation.id, fpo_org_id, fmt.value, mode.value,
        )
        audit.log_bulk_operation(
            self.db,
            actor=requester.user_id,
            organization_id=requester.org_id,
            bulk_operation_id=operation.id,
            action=AuditAction.BULK_OPERATION_START,
            metadata={"fpo_org_id": fpo_org_id, "input_format": fmt.value, "processing_mode": mode.value},
        )

        try:
            records = await asyncio.to_thread(self._parse, fmt, data, farmers)
        except FormatError as exc:
            self._reject(operation.id, ErrorKind.FORMAT, exc, requester)
            raise
        return await self._launch(operation, records, mode, operation.options or {}, requester)

    async def retry_failed_records(
        self,
        operation_id: uuid.UUID,
        request: schemas.RetryBulkRequest,
        requester: Requester,
    ) -> schemas.OperationDescriptor:
        """Start a child operation over the parent's failed records (all, or the selected indices)."""
        parent = self._get_operation(operation_id)
        requester = requester.scoped_to(parent.fpo_org_id)
        if not is_terminal(parent.status):
            raise OperationNotRetryableError(
                f"operation {operation_id} is still {parent.status}",
                context={"operation_id": str(operation_id), "status": parent.status},
            )
        failed = {
            outcome.record_index: outcome
            for outcome in crud.get_record_outcomes(self.db, operation_id, status=RecordStatus.FAILED.value)
        }
        if not failed:
            raise OperationNotRetryableError(
                f"operation {operation_id} has no failed records to retry",
                context={"operation_id": str(operation_id)},
            )
        if request.retry_all:
            selected = sorted(failed)
        else:
            selected = sorted(set(request.record_indices or []))
            invalid = [index for index in selected if index not in failed]
            if invalid:
                raise InvalidRetrySelectionError(
                    "record indices are not failed records of this operation",
                    context={"invalid_indices": invalid},
                )

        records = [
            ParsedRecord(index=index, fields=dict(failed[index].input_data or {}))
            for index in selected
        ]
        mode = resolve_processing_mode(request.processing_mode or parent.processing_mode)
        options = {**(parent.options or {}), **request.options.model_dump(exclude_unset=True, exclude_none=True)}
        child = crud.create_bulk_operation(
            self.db,
            fpo_org_id=parent.fpo_org_id,
            requested_by=requester.user_id,
            organization_id=requester.org_id,
            input_format=parent.input_format,
            processing_mode=mode.value,
            options=options,
            parent_operation_id=parent.id,
            lease_owner=self.manager.owner_id,
            lease_expires_at=self._lease_expiry(),
        )
        logger.info(
            "Created retry operation %s for %d failed record(s) of %s", child.id, len(records), operation_id
        )
        audit.log_bulk_operation(
            self.db,
            actor=requester.user_id,
            organization_id=requester.org_id,
            bulk_operation_id=parent.id,
            action=AuditAction.BULK_OPERATION_RETRY,
            metadata={"retry_operation_id": str(child.id), "record_indices": selected},
        )
        return await self._launch(child, records, mode, options, requester)

    async def _launch(
        self,
        operation,
        records: List[ParsedRecord],
        mode: ProcessingMode,
        options: Dict[str, Any],
        requester: Requester,
    ) -> schemas.OperationDescriptor:
        crud.set_parsed_input(self.db, operation.id, _serialize_records(records))

        if mode is ProcessingMode.SYNC and len(records) > self.settings.max_sync_records:
            exc = SyncLimitExceededError(
                f"synchronous mode accepts at most {self.settings.max_sync_records} records; use async or batch",
                context={"records": len(records), "max_sync_records": self.settings.max_sync_records},
            )
            self._reject(operation.id, ErrorKind.SYNC_LIMIT, exc, requester)
            raise exc

        try:
            await asyncio.to_thread(self.gate.authorize, requester.user_id, operation.fpo_org_id, requester.org_id)
        except (AuthorizationError, AuthorizationUnavailableError) as exc:
            self._reject(operation.id, ErrorKind.AUTHORIZATION, exc, requester)
            raise

        context = self._build_context(operation, records, mode, options, organization_id=requester.org_id)
        if mode is ProcessingMode.SYNC:
            self.manager.register(context)
            try:
                await self.runner.run(context, records)
            finally:
                self.manager.unregister(operation.id)
            return self._descriptor(operation.id, "Bulk operation finished", include_outcomes=True)

        self.manager.submit(context, self.runner.run(context, records))
        return self._descriptor(operation.id, "Bulk operation accepted; poll status_url for progress")

    def _parse(self, fmt: InputFormat, data: Optional[bytes], farmers: Optional[List[Dict[str, Any]]]) -> List[ParsedRecord]:
        max_records = self.settings.max_records
        if farmers is not None:
            source = farmer_parser.records_from_inline(farmers, max_records=max_records)
        else:
            source = farmer_parser.parse_records(data or b"", fmt, max_records=max_records)
        return farmer_parser.parse_all(source)

    def _reject(self, operation_id: uuid.UUID, kind: ErrorKind, exc: BulkOperationError, requester: Requester) -> None:
        crud.transition_bulk_operation(
            self.db,
            operation_id,
            from_statuses=[OperationStatus.PENDING.value],
            to_status=OperationStatus.FAILED.value,
            error_kind=kind.value,
            error_detail=exc.message,
            finished_at=now_utc(),
        )
        logger.warning("Bulk operation %s rejected (%s): %s", operation_id, kind.value, exc)
        audit.log_bulk_operation(
            self.db,
            actor=requester.user_id,
            organization_id=requester.org_id,
            bulk_operation_id=operation_id,
            action=AuditAction.BULK_OPERATION_REJECT,
            status=AuditStatus.FAILURE,
            reason=exc.code,
            metadata=exc.context,
        )

    def _build_context(
        self,
        operation,
        records: Sequence[ParsedRecord],
        mode: ProcessingMode,
        options: Dict[str, Any],
        *,
        organization_id: Optional[str],
        pending_indices: Optional[Sequence[int]] = None,
        counts: Optional[Dict[str, int]] = None,
    ) -> OperationContext:
        indices = [record.index for record in records] if pending_indices is None else pending_indices
        tracker = ProgressTracker(
            operation.id,
            OutcomeArena(indices),
            self.session_factory,
            total=len(records),
            lease_owner=self.manager.owner_id,
            **(counts or {}),
        )
        return OperationContext(
            operation_id=operation.id,
            fpo_org_id=operation.fpo_org_id,
            requested_by=operation.requested_by,
            processing_mode=mode,
            settings=RunSettings.resolve(self.settings, options),
            tracker=tracker,
            organization_id=organization_id,
            inputs={record.index: dict(record.fields) for record in records},
            notification_webhook=options.get("notification_webhook"),
            lease_owner=self.manager.owner_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _get_operation(self, operation_id: uuid.UUID):
        # guarded updates bypass the identity map
        self.db.expire_all()
        operation = crud.get_bulk_operation(self.db, operation_id)
        if operation is None:
            raise OperationNotFoundError(
                f"bulk operation {operation_id} not found", context={"operation_id": str(operation_id)}
            )
        return operation

    def _status_of(self, operation) -> schemas.BulkOperationStatus:
        # a run in this process serves its live counters; otherwise the stored row is current
        context = self.manager.get_context(operation.id)
        return schemas.BulkOperationStatus.from_model(
            operation,
            self.status_url(operation.id),
            live_progress=context.tracker.snapshot() if context is not None else None,
            error_summary=crud.count_failures_by_kind(self.db, operation.id),
        )

    def get_status(self, operation_id: uuid.UUID) -> schemas.BulkOperationStatus:
        return self._status_of(self._get_operation(operation_id))

    def list_operations(
        self,
        *,
        fpo_org_id: Optional[str] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[schemas.BulkOperationStatus]:
        operations = crud.get_bulk_operations(self.db, fpo_org_id=fpo_org_id, status=status, skip=skip, limit=limit)
        return [self._status_of(op) for op in operations]

    def get_outcomes(self, operation_id: uuid.UUID, status: Optional[str] = None) -> List[schemas.RecordOutcome]:
        self._get_operation(operation_id)
        return [
            schemas.RecordOutcome.model_validate(outcome)
            for outcome in crud.get_record_outcomes(self.db, operation_id, status=status)
        ]

    def _descriptor(
        self, operation_id: uuid.UUID, message: str, *, include_outcomes: bool = False
    ) -> schemas.OperationDescriptor:
        status = self.get_status(operation_id)
        return schemas.OperationDescriptor(
            operation_id=operation_id,
            status=status.status,
            status_url=self.status_url(operation_id),
            result_url=self.result_url(operation_id),
            message=message,
            operation=status,
            outcomes=self.get_outcomes(operation_id) if include_outcomes else None,
        )

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------
    def cancel(
        self, operation_id: uuid.UUID, requester: Requester, reason: Optional[str] = None
    ) -> schemas.BulkOperationStatus:
        """Stop an active operation; in-flight records finish, nothing new is dispatched."""
        operation = self._get_operation(operation_id)
        if is_terminal(operation.status):
            raise OperationAlreadyCompleteError(
                f"bulk operation {operation_id} is already {operation.status}",
                context={"operation_id": str(operation_id), "status": operation.status},
            )

        if operation.status == OperationStatus.PENDING.value:
            moved = crud.transition_bulk_operation(
                self.db,
                operation_id,
                from_statuses=[OperationStatus.PENDING.value],
                to_status=OperationStatus.CANCELLED.value,
                cancel_requested=True,
                finished_at=now_utc(),
            )
            if moved:
                self.manager.request_cancel(operation_id)
                logger.info("Bulk operation %s cancelled before processing", operation_id)
                self._audit_cancel(operation_id, requester, reason)
                return self.get_status(operation_id)

        if not crud.request_bulk_operation_cancel(self.db, operation_id):
            current = self._get_operation(operation_id)
            raise OperationAlreadyCompleteError(
                f"bulk operation {operation_id} is already {current.status}",
                context={"operation_id": str(operation_id), "status": current.status},
            )
        if self.manager.request_cancel(operation_id):
            logger.info("Cancellation requested for running bulk operation %s", operation_id)
        else:
            logger.info("Cancellation recorded for bulk operation %s with no run in this process", operation_id)
        self._audit_cancel(operation_id, requester, reason)
        return self.get_status(operation_id)

    def _audit_cancel(self, operation_id: uuid.UUID, requester: Requester, reason: Optional[str]) -> None:
        audit.log_bulk_operation(
            self.db,
            actor=requester.user_id,
            organization_id=requester.org_id,
            bulk_operation_id=operation_id,
            action=AuditAction.BULK_OPERATION_CANCEL,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Export / validate / template
    # ------------------------------------------------------------------
    def export_results(self, operation_id: uuid.UUID, export_format: str = "csv", include_all: bool = False) -> ExportFile:
        """Render outcomes (failures only unless ``include_all``) sorted by record index."""
        self._get_operation(operation_id)
        try:
            fmt = resolve_export_format(export_format)
        except ValueError as exc:
            raise UnsupportedFormatError(str(exc), context={"format": export_format}) from exc
        status = None if include_all else RecordStatus.FAILED.value
        outcomes = crud.get_record_outcomes(self.db, operation_id, status=status)
        return export_outcomes(operation_id, outcomes, fmt)

    async def validate_only(
        self,
        *,
        input_format: str,
        data: Optional[bytes] = None,
        farmers: Optional[List[Dict[str, Any]]] = None,
    ) -> schemas.ValidationReport:
        """Parse and validate without creating an operation."""
        fmt = self._resolve_format(input_format)
        records = await asyncio.to_thread(self._parse, fmt, data, farmers)
        return self.validator.validate(records).report

    def get_template(self, template_format: str = "csv", include_example: bool = True) -> schemas.BulkTemplate:
        fmt = self._resolve_format(template_format)
        rendered = render_template(fmt, include_example)
        return schemas.BulkTemplate(
            format=fmt.value,
            file_name=rendered.filename,
            content=base64.b64encode(rendered.content).decode("ascii"),
            fields=TEMPLATE_FIELDS,
            instructions=TEMPLATE_INSTRUCTIONS.format(
                format=fmt.value.upper(), max_records=self.settings.max_records
            ),
        )

    @staticmethod
    def _resolve_format(value: str) -> InputFormat:
        try:
            return resolve_input_format(value)
        except ValueError as exc:
            raise UnsupportedFormatError(str(exc), context={"input_format": value}) from exc

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------
    async def recover_interrupted_operations(self) -> List[uuid.UUID]:
        """Re-dispatch operations left PENDING or PROCESSING by a process that is gone.

        An operation is only taken over after claiming its lease, which
        succeeds when the lease is unset or expired; operations a live
        process is still running are left alone.
        """
        owner = self.manager.owner_id
        resumed: List[uuid.UUID] = []
        for operation in crud.get_operations_in_status(self.db, ACTIVE_STATUSES):
            if self.manager.get_context(operation.id) is not None:
                continue
            now = now_utc()
            if not crud.claim_bulk_operation_lease(
                self.db, operation.id, owner=owner, expires_at=self._lease_expiry(now), now=now
            ):
                logger.debug("Bulk operation %s is held by a live process; not recovered", operation.id)
                continue
            if operation.cancel_requested:
                crud.transition_bulk_operation(
                    self.db,
                    operation.id,
                    from_statuses=list(ACTIVE_STATUSES),
                    to_status=OperationStatus.CANCELLED.value,
                    held_by=owner,
                    finished_at=now_utc(),
                )
                logger.info("Bulk operation %s cancelled during recovery", operation.id)
                continue

            records = _deserialize_records(operation.input_records)
            if not records:
                crud.transition_bulk_operation(
                    self.db,
                    operation.id,
                    from_statuses=list(ACTIVE_STATUSES),
                    to_status=OperationStatus.FAILED.value,
                    held_by=owner,
                    error_kind=ErrorKind.INTERRUPTED.value,
                    error_detail="interrupted before the input was stored; please upload again",
                    finished_at=now_utc(),
                )
                logger.warning("Bulk operation %s interrupted before parsing completed", operation.id)
                continue

            mode = resolve_processing_mode(operation.processing_mode)
            options = operation.options or {}
            org_id = operation.organization_id or operation.fpo_org_id
            if operation.status == OperationStatus.PENDING.value:
                requester = Requester(operation.requested_by, org_id)
                try:
                    await asyncio.to_thread(self.gate.authorize, requester.user_id, operation.fpo_org_id, org_id)
                except AuthorizationError as exc:
                    self._reject(operation.id, ErrorKind.AUTHORIZATION, exc, requester)
                    continue
                except AuthorizationUnavailableError:
                    crud.release_bulk_operation_lease(self.db, operation.id, owner=owner)
                    logger.warning("Bulk operation %s left PENDING; authorization unavailable", operation.id)
                    continue
                context = self._build_context(operation, records, mode, options, organization_id=org_id)
                self.manager.submit(context, self.runner.run(context, records))
            else:
                recorded = crud.get_recorded_indices(self.db, operation.id)
                context = self._build_context(
                    operation,
                    records,
                    mode,
                    options,
                    organization_id=org_id,
                    pending_indices=[r.index for r in records if r.index not in recorded],
                    counts={
                        "processed": operation.processed,
                        "successful": operation.successful,
                        "failed": operation.failed,
                    },
                )
                self.manager.submit(context, self.runner.run(context, records, resume=True))
            logger.info("Recovered bulk operation %s (%s)", operation.id, operation.status)
            resumed.append(operation.id)
        return resumed


def build_bulk_farmer_service(db: Session, **overrides: Any) -> BulkFarmerService:
    """Service wired to the configured AAA and farmer collaborators."""
    overrides.setdefault("permission_checker", AAAClient.from_settings())
    overrides.setdefault("farmer_creator", FarmerServiceClient.from_settings())
    return BulkFarmerService(db, **overrides)
