from proctorexam.db import Base, json_type
from sqlalchemy import Column, String, DateTime, Index, Uuid
from sqlalchemy.ext.mutable import MutableDict
import uuid

from proctorexam.services.clock import utcnow


class AuditLog(Base):
    """Append-only audit entries emitted by the engine (sessions, violations, batches)."""
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_target", "target_type", "target_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(String, nullable=False)
    target_type = Column(String, nullable=False)  # session / batch / exam
    target_id = Column(Uuid, nullable=False)
    actor_id = Column(Uuid, nullable=True)
    ip_address = Column(String, nullable=True)
    details = Column(MutableDict.as_mutable(json_type()), nullable=True, default=dict)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
