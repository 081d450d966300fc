from proctorexam.db import Base, json_type
from sqlalchemy import Column, Integer, Boolean, DateTime, String, ForeignKey, UniqueConstraint, Index, Uuid, event, inspect
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import object_session
import uuid
import enum

from proctorexam.exceptions import BatchLocked


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    LOCKED = "locked"


class ExamBatch(Base):
    """
    A capacity-bounded slice of an exam's cohort. Once ``is_locked`` is set no
    column may change again (enforced by the ``before_update`` listener below).
    """
    __tablename__ = "exam_batches"
    __table_args__ = (
        UniqueConstraint("exam_id", "batch_number", name="uq_exam_batch_number"),
        Index("ix_exam_batches_exam_status", "exam_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    exam_id = Column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    batch_number = Column(Integer, nullable=False)

    # roster, list of student ids as strings
    students = Column(MutableList.as_mutable(json_type()), nullable=False, default=list)
    max_capacity = Column(Integer, nullable=False, default=500)
    current_count = Column(Integer, nullable=False, default=0)

    scheduled_start = Column(DateTime, nullable=True)
    scheduled_end = Column(DateTime, nullable=True)
    actual_start = Column(DateTime, nullable=True)
    actual_end = Column(DateTime, nullable=True)

    status = Column(String, nullable=False, default=BatchStatus.PENDING.value)

    total_enrolled = Column(Integer, nullable=False, default=0)
    total_attempted = Column(Integer, nullable=False, default=0)
    total_submitted = Column(Integer, nullable=False, default=0)
    total_violations = Column(Integer, nullable=False, default=0)

    is_locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(Uuid, nullable=True)

    def has_student(self, student_id) -> bool:
        return str(student_id) in (self.students or [])


@event.listens_for(ExamBatch, "before_update")
def _reject_locked_batch_updates(mapper, connection, target):
    history = inspect(target).attrs.is_locked.history
    previous = (history.deleted or history.unchanged or [False])[0]
    if not previous:
        return
    session = object_session(target)
    if session is not None and session.is_modified(target, include_collections=False):
        raise BatchLocked(f"Batch {target.batch_number} is locked and cannot be modified")
