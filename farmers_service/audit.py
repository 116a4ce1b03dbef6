"""
Audit logging helpers and enums.

Centralized helpers to persist normalized audit records for bulk
operations. Audit persistence never interrupts the pipeline: failures are
logged and the caller carries on.
"""
from __future__ import annotations
import logging
import uuid
from enum import Enum
from typing import Any, Optional, Dict
from sqlalchemy.orm import Session

from farmers_service.db import crud, schemas

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    BULK_OPERATION_START = "bulk_operation_start"
    BULK_OPERATION_COMPLETE = "bulk_operation_complete"
    BULK_OPERATION_REJECT = "bulk_operation_reject"
    BULK_OPERATION_CANCEL = "bulk_operation_cancel"
    BULK_OPERATION_RETRY = "bulk_operation_retry"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def log(
    db: Session,
    *,
    action: AuditAction | str,
    status: AuditStatus | str = AuditStatus.SUCCESS,
    target_type: str,
    target_id: Optional[uuid.UUID] = None,
    actor: str,
    organization_id: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> schemas.AuditLog:
    """Central audit logging helper."""
    # Persist pure string values, not Enum reprs
    action_value = action.value if isinstance(action, AuditAction) else str(action)
    status_value = status.value if isinstance(status, AuditStatus) else str(status)
    audit_log = schemas.AuditLogCreate(
        action_type=action_value,
        status=status_value,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
        metadata=metadata or {},
    )
    return crud.create_audit_log(
        db,
        audit_log=audit_log,
        actor=actor,
        organization_id=organization_id,
    )


def log_bulk_operation(
    db: Session,
    *,
    actor: str,
    organization_id: Optional[str],
    bulk_operation_id: uuid.UUID,
    action: AuditAction,
    status: AuditStatus | str = AuditStatus.SUCCESS,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
):
    """Audit a bulk operation event; returns None when the audit row could not be written."""
    try:
        return log(
            db,
            action=action,
            status=status,
            target_type="bulk_operation",
            target_id=bulk_operation_id,
            actor=actor,
            organization_id=organization_id,
            reason=reason,
            metadata=metadata,
        )
    except Exception as exc:
        db.rollback()
        logger.warning("Audit write failed for bulk operation %s (%s): %s", bulk_operation_id, action, exc)
        return None


__all__ = ["AuditAction", "AuditStatus", "log", "log_bulk_operation"]
