from proctorexam.db import Base, json_type
from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey, Uuid, Index
import uuid
import enum

from proctorexam.services.clock import utcnow


class SubmissionType(str, enum.Enum):
    MANUAL = "manual"
    AUTO_TIMEOUT = "auto-timeout"
    AUTO_VIOLATION = "auto-violation"
    ADMIN_FORCE = "admin-force"


class Submission(Base):
    """
    Immutable grading artifact written once when an attempt is finalized.

    | Column | Notes |
    | :--- | :--- |
    | `session_id` | unique, one snapshot per attempt |
    | `status` | terminal status of the session at finalize time |
    | `submission_type` | manual / auto-timeout / auto-violation / admin-force |
    | `answers` | per-question breakdown, marks `None` while pending manual grade |
    """
    __tablename__ = "submissions"
    __table_args__ = (Index("ix_submissions_exam_student", "exam_id", "student_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, unique=True)
    exam_id = Column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    batch_number = Column(Integer, nullable=False, default=1)

    status = Column(String, nullable=False)
    submission_type = Column(String, nullable=False, default=SubmissionType.MANUAL.value)
    termination_reason = Column(String, nullable=True)

    started_at = Column(DateTime, nullable=False)
    server_end_time = Column(DateTime, nullable=False)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    time_taken_seconds = Column(Integer, nullable=False, default=0)

    total_marks = Column(Float, nullable=False, default=0)
    marks_obtained = Column(Float, nullable=False, default=0)
    percentage = Column(Float, nullable=False, default=0)
    questions_attempted = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    wrong_answers = Column(Integer, nullable=False, default=0)
    unattempted = Column(Integer, nullable=False, default=0)
    pending_manual_grade = Column(Integer, nullable=False, default=0)
    total_violations = Column(Integer, nullable=False, default=0)

    answers = Column(json_type(), nullable=False, default=list)
    submission_ip = Column(String, nullable=True)
