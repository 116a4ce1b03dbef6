import uuid
from sqlalchemy import Column, Text, DateTime, Integer, Boolean, ForeignKey, Index, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from .base import Base, now_utc


class BulkOperation(Base):
    __tablename__ = 'bulk_operations'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fpo_org_id = Column(Text, nullable=False)
    requested_by = Column(Text, nullable=False)
    # caller's org context, used when re-authorizing recovered operations
    organization_id = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    input_format = Column(Text, nullable=False)  # csv|excel|json
    processing_mode = Column(Text, nullable=False)  # sync|async|batch
    status = Column(Text, nullable=False, default='PENDING')  # PENDING|PROCESSING|COMPLETED|FAILED|CANCELLED
    total = Column(Integer, nullable=False, default=0)
    processed = Column(Integer, nullable=False, default=0)
    successful = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    parent_operation_id = Column(Uuid(as_uuid=True), ForeignKey('bulk_operations.id', ondelete='SET NULL'), nullable=True)
    options = Column(JSONB, nullable=True)
    input_records = Column(JSONB, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    # process currently running the operation; others take over only once the lease has expired
    lease_owner = Column(Text, nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    error_kind = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    outcomes = relationship(
        "RecordOutcome",
        back_populates="operation",
        cascade="all, delete-orphan",
        order_by="RecordOutcome.record_index",
    )

    __table_args__ = (
        Index('ix_bulk_operations_fpo_org_id_created_at', 'fpo_org_id', 'created_at'),
        Index('ix_bulk_operations_status', 'status'),
    )


class RecordOutcome(Base):
    __tablename__ = 'bulk_record_outcomes'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    operation_id = Column(Uuid(as_uuid=True), ForeignKey('bulk_operations.id', ondelete='CASCADE'), nullable=False)
    record_index = Column(Integer, nullable=False)
    status = Column(Text, nullable=False)  # SUCCESS|FAILED
    created_farmer_id = Column(Text, nullable=True)
    error_kind = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    input_data = Column(JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    operation = relationship("BulkOperation", back_populates="outcomes")

    __table_args__ = (
        UniqueConstraint('operation_id', 'record_index', name='uq_bulk_record_outcomes_operation_record'),
        Index('ix_bulk_record_outcomes_operation_id_status', 'operation_id', 'status'),
    )
