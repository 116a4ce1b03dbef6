"""
CRUD facade for ORM models.

Delegates to the per-domain repositories for bulk operations, record
outcomes and audit logs.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from . import schemas
from .repositories import bulk_ops as repo_bulk
from .repositories import audits as repo_audits


# CRUD for BulkOperation (facade delegates to repository)
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
    return repo_bulk.create_bulk_operation(
        db,
        fpo_org_id=fpo_org_id,
        requested_by=requested_by,
        input_format=input_format,
        processing_mode=processing_mode,
        options=options,
        parent_operation_id=parent_operation_id,
        organization_id=organization_id,
        lease_owner=lease_owner,
        lease_expires_at=lease_expires_at,
    )


def get_bulk_operation(db: Session, bulk_operation_id: uuid.UUID):
    return repo_bulk.get_bulk_operation(db, bulk_operation_id)


def get_bulk_operations(
    db: Session,
    *,
    fpo_org_id: Optional[str] = None,
    requested_by: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    return repo_bulk.get_bulk_operations(db, fpo_org_id, requested_by, status, skip, limit)


def get_operations_in_status(db: Session, statuses: Iterable[str]):
    return repo_bulk.get_operations_in_status(db, statuses)


def transition_bulk_operation(
    db: Session,
    bulk_operation_id: uuid.UUID,
    *,
    from_statuses: Iterable[str],
    to_status: str,
    held_by: Optional[str] = None,
    **fields: Any,
) -> bool:
    return repo_bulk.transition_status(
        db, bulk_operation_id, from_statuses=from_statuses, to_status=to_status, held_by=held_by, **fields
    )


def claim_bulk_operation_lease(
    db: Session, bulk_operation_id: uuid.UUID, *, owner: str, expires_at: datetime, now: datetime
) -> bool:
    return repo_bulk.claim_lease(db, bulk_operation_id, owner=owner, expires_at=expires_at, now=now)


def renew_bulk_operation_lease(db: Session, bulk_operation_id: uuid.UUID, *, owner: str, expires_at: datetime) -> bool:
    return repo_bulk.renew_lease(db, bulk_operation_id, owner=owner, expires_at=expires_at)


def release_bulk_operation_lease(db: Session, bulk_operation_id: uuid.UUID, *, owner: str) -> bool:
    return repo_bulk.release_lease(db, bulk_operation_id, owner=owner)


def set_parsed_input(db: Session, bulk_operation_id: uuid.UUID, input_records: List[Dict[str, Any]]) -> bool:
    return repo_bulk.set_parsed_input(db, bulk_operation_id, input_records)


def request_bulk_operation_cancel(db: Session, bulk_operation_id: uuid.UUID) -> bool:
    return repo_bulk.request_cancel(db, bulk_operation_id)


# CRUD for RecordOutcome
def record_outcome(db: Session, bulk_operation_id: uuid.UUID, **fields: Any) -> bool:
    return repo_bulk.record_outcome(db, bulk_operation_id, **fields)


def get_record_outcomes(
    db: Session,
    bulk_operation_id: uuid.UUID,
    *,
    status: Optional[str] = None,
    record_indices: Optional[Iterable[int]] = None,
):
    return repo_bulk.get_outcomes(db, bulk_operation_id, status, record_indices)


def get_recorded_indices(db: Session, bulk_operation_id: uuid.UUID):
    return repo_bulk.get_outcome_indices(db, bulk_operation_id)


def count_failures_by_kind(db: Session, bulk_operation_id: uuid.UUID) -> Dict[str, int]:
    return repo_bulk.count_failures_by_kind(db, bulk_operation_id)


# CRUD for AuditLog (facade delegates to repository)
def create_audit_log(
    db: Session,
    audit_log: schemas.AuditLogCreate,
    *,
    actor: str,
    organization_id: Optional[str] = None,
):
    return repo_audits.create_audit_log(db, audit_log, actor, organization_id)


def get_audit_logs(
    db: Session,
    *,
    organization_id: Optional[str] = None,
    target_id: Optional[uuid.UUID] = None,
    action_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    return repo_audits.get_audit_logs(db, organization_id, target_id, action_type, skip, limit)
