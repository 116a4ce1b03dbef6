"""
Pydantic schemas for the bulk onboarding pipeline and audit logs.
"""

from .bulk_ops import (
    BulkProcessingOptions,
    BulkFarmerRequest,
    ValidateBulkRequest,
    RetryBulkRequest,
    CancelBulkRequest,
    ProgressInfo,
    BulkOperationStatus,
    RecordOutcome,
    OperationDescriptor,
    ValidationIssue,
    ValidationReport,
    TemplateField,
    BulkTemplate,
)
from .audits import AuditLogBase, AuditLogCreate, AuditLog

__all__ = [
    "BulkProcessingOptions",
    "BulkFarmerRequest",
    "ValidateBulkRequest",
    "RetryBulkRequest",
    "CancelBulkRequest",
    "ProgressInfo",
    "BulkOperationStatus",
    "RecordOutcome",
    "OperationDescriptor",
    "ValidationIssue",
    "ValidationReport",
    "TemplateField",
    "BulkTemplate",
    "AuditLogBase",
    "AuditLogCreate",
    "AuditLog",
]
