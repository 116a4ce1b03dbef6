"""
SQLAlchemy models for the bulk onboarding pipeline.

Exposes `Base`, `now_utc`, and all ORM classes from one place.
"""

from .base import Base, now_utc  # re-export

from .bulk_ops import BulkOperation, RecordOutcome
from .audit import AuditLog

__all__ = [
    "Base",
    "now_utc",
    "BulkOperation",
    "RecordOutcome",
    "AuditLog",
]
