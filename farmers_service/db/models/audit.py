import uuid
from sqlalchemy import Column, Text, DateTime, Index, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from .base import Base, now_utc


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # FPO org and subject ids are owned by the external identity service
    organization_id = Column(Text, nullable=True)
    actor = Column(Text, nullable=False)
    action_type = Column(Text, nullable=False)
    target_type = Column(Text, nullable=True)
    target_id = Column(Uuid(as_uuid=True), nullable=True)
    status = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    # Use a non-reserved Python attribute name while keeping DB column name 'metadata'
    metadata_json = Column('metadata', JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        Index('ix_audit_logs_organization_id_created_at', 'organization_id', 'created_at'),
        Index('ix_audit_logs_target', 'target_type', 'target_id'),
        Index('ix_audit_logs_action_type', 'action_type'),
    )
