"""
Bulk operations repository functions.

Implements create/read/list for bulk operations and their record outcomes,
plus the guarded single-statement updates the pipeline relies on: status
transitions only apply from the expected source states, and progress
counters only move while an operation is active. A run holds a lease on its
operation; when a holder is given, writes only apply while that holder still
owns the lease.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from farmers_service.db import models
from farmers_service.utils.bulk_enums import ACTIVE_STATUSES, RecordStatus


def create_bulk_operation(
    db: Session,
    *,
    fpo_org_id: str,
    requested_by: str,
    input_format: str,
    processing_mode: str,
    options: Optional[Dict[str, Any]] = None,
    parent_operation_id: Optional[uuid.UUID] = None,
    organization_id: Optional[str] = None,
    lease_owner: Optional[str] = None,
    lease_expires_at: Optional[datetime] = None,
):
    db_bulk_operation = models.BulkOperation(
        fpo_org_id=fpo_org_id,
        requested_by=requested_by,
        input_format=input_format,
        processing_mode=processing_mode,
        options=options or {},
        parent_operation_id=parent_operation_id,
        organization_id=organization_id,
        status="PENDING",
        total=0,
        processed=0,
        successful=0,
        failed=0,
        cancel_requested=False,
        lease_owner=lease_owner,
        lease_expires_at=lease_expires_at,
    )
    db.add(db_bulk_operation)
    db.commit()
    db.refresh(db_bulk_operation)
    return db_bulk_operation


def get_bulk_operation(db: Session, bulk_operation_id: uuid.UUID):
    return db.query(models.BulkOperation).filter(models.BulkOperation.id == bulk_operation_id).first()


def get_bulk_operations(
    db: Session,
    fpo_org_id: Optional[str] = None,
    requested_by: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    query = db.query(models.BulkOperation)
    if fpo_org_id:
        query = query.filter(models.BulkOperation.fpo_org_id == fpo_org_id)
    if requested_by:
        query = query.filter(models.BulkOperation.requested_by == requested_by)
    if status:
        query = query.filter(models.BulkOperation.status == status)
    return query.order_by(models.BulkOperation.created_at.desc()).offset(skip).limit(limit).all()


def get_operations_in_status(db: Session, statuses: Iterable[str]):
    return (
        db.query(models.BulkOperation)
        .filter(models.BulkOperation.status.in_(list(statuses)))
        .order_by(models.BulkOperation.created_at.asc())
        .all()
    )


def transition_status(
    db: Session,
    bulk_operation_id: uuid.UUID,
    *,
    from_statuses: Iterable[str],
    to_status: str,
    held_by: Optional[str] = None,
    **fields: Any,
) -> bool:
    """Move an operation to ``to_status`` if it is currently in one of ``from_statuses``.

    Returns False when the row was not in an expected state (already terminal,
    unknown id, or leased to someone other than ``held_by``); nothing is
    written in that case.
    """
    values = {"status": to_status, **fields}
    query = db.query(models.BulkOperation).filter(
        models.BulkOperation.id == bulk_operation_id,
        models.BulkOperation.status.in_(list(from_statuses)),
    )
    if held_by is not None:
        query = query.filter(models.BulkOperation.lease_owner == held_by)
    updated = query.update(values, synchronize_session=False)
    db.commit()
    return updated == 1


def claim_lease(
    db: Session,
    bulk_operation_id: uuid.UUID,
    *,
    owner: str,
    expires_at: datetime,
    now: datetime,
) -> bool:
    """Take over an active operation whose lease is unset, expired, or already ``owner``'s."""
    updated = (
        db.query(models.BulkOperation)
        .filter(
            models.BulkOperation.id == bulk_operation_id,
            models.BulkOperation.status.in_(list(ACTIVE_STATUSES)),
            or_(
                models.BulkOperation.lease_owner == owner,
                models.BulkOperation.lease_expires_at.is_(None),
                models.BulkOperation.lease_expires_at < now,
            ),
        )
        .update({"lease_owner": owner, "lease_expires_at": expires_at}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def renew_lease(db: Session, bulk_operation_id: uuid.UUID, *, owner: str, expires_at: datetime) -> bool:
    """Extend ``owner``'s lease; False once the operation is terminal or leased elsewhere."""
    updated = (
        db.query(models.BulkOperation)
        .filter(
            models.BulkOperation.id == bulk_operation_id,
            models.BulkOperation.status.in_(list(ACTIVE_STATUSES)),
            models.BulkOperation.lease_owner == owner,
        )
        .update({"lease_expires_at": expires_at}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def release_lease(db: Session, bulk_operation_id: uuid.UUID, *, owner: str) -> bool:
    """Give up ``owner``'s lease so the next recovery may resume the operation at once."""
    updated = (
        db.query(models.BulkOperation)
        .filter(
            models.BulkOperation.id == bulk_operation_id,
            models.BulkOperation.lease_owner == owner,
        )
        .update({"lease_owner": None, "lease_expires_at": None}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def set_parsed_input(db: Session, bulk_operation_id: uuid.UUID, input_records: List[Dict[str, Any]]) -> bool:
    """Fix ``total`` and store the parsed records; only allowed while PENDING."""
    updated = (
        db.query(models.BulkOperation)
        .filter(
            models.BulkOperation.id == bulk_operation_id,
            models.BulkOperation.status == "PENDING",
        )
        .update(
            {"total": len(input_records), "input_records": input_records},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def request_cancel(db: Session, bulk_operation_id: uuid.UUID) -> bool:
    updated = (
        db.query(models.BulkOperation)
        .filter(
            models.BulkOperation.id == bulk_operation_id,
            models.BulkOperation.status.in_(list(ACTIVE_STATUSES)),
        )
        .update({"cancel_requested": True}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def record_outcome(
    db: Session,
    bulk_operation_id: uuid.UUID,
    *,
    record_index: int,
    status: str,
    created_farmer_id: Optional[str] = None,
    error_kind: Optional[str] = None,
    error_detail: Optional[str] = None,
    attempts: int = 0,
    input_data: Optional[Dict[str, Any]] = None,
    held_by: Optional[str] = None,
) -> bool:
    """Append one outcome row and bump the operation counters in one transaction.

    The counter update is a single UPDATE guarded by an active status (and by
    the lease when ``held_by`` is given), so a terminal operation never has
    its progress changed. When the guard fails the outcome insert is rolled
    back as well.
    """
    success = status == RecordStatus.SUCCESS.value
    query = db.query(models.BulkOperation).filter(
        models.BulkOperation.id == bulk_operation_id,
        models.BulkOperation.status.in_(list(ACTIVE_STATUSES)),
    )
    if held_by is not None:
        query = query.filter(models.BulkOperation.lease_owner == held_by)
    bumped = (
        query
        .update(
            {
                models.BulkOperation.processed: models.BulkOperation.processed + 1,
                models.BulkOperation.successful: models.BulkOperation.successful + (1 if success else 0),
                models.BulkOperation.failed: models.BulkOperation.failed + (0 if success else 1),
            },
            synchronize_session=False,
        )
    )
    if bumped != 1:
        db.rollback()
        return False
    db.add(models.RecordOutcome(
        operation_id=bulk_operation_id,
        record_index=record_index,
        status=status,
        created_farmer_id=created_farmer_id,
        error_kind=error_kind,
        error_detail=error_detail,
        attempts=attempts,
        input_data=input_data,
    ))
    db.commit()
    return True


def get_outcomes(
    db: Session,
    bulk_operation_id: uuid.UUID,
    status: Optional[str] = None,
    record_indices: Optional[Iterable[int]] = None,
):
    query = db.query(models.RecordOutcome).filter(models.RecordOutcome.operation_id == bulk_operation_id)
    if status:
        query = query.filter(models.RecordOutcome.status == status)
    if record_indices is not None:
        query = query.filter(models.RecordOutcome.record_index.in_(list(record_indices)))
    return query.order_by(models.RecordOutcome.record_index.asc()).all()


def get_outcome_indices(db: Session, bulk_operation_id: uuid.UUID) -> Set[int]:
    rows = (
        db.query(models.RecordOutcome.record_index)
        .filter(models.RecordOutcome.operation_id == bulk_operation_id)
        .all()
    )
    return {row[0] for row in rows}


def count_failures_by_kind(db: Session, bulk_operation_id: uuid.UUID) -> Dict[str, int]:
    rows = (
        db.query(models.RecordOutcome.error_kind, func.count(models.RecordOutcome.id))
        .filter(
            models.RecordOutcome.operation_id == bulk_operation_id,
            models.RecordOutcome.status == RecordStatus.FAILED.value,
        )
        .group_by(models.RecordOutcome.error_kind)
        .all()
    )
    return {kind or "unknown": count for kind, count in rows}
