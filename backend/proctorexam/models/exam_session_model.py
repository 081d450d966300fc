from proctorexam.db import Base, json_type
from sqlalchemy import (
    Column, Integer, Float, String, Boolean, DateTime, Text, Index, ForeignKey, Uuid,
    Enum as SAEnum, UniqueConstraint, text,
)
from sqlalchemy.ext.mutable import MutableDict
import uuid
import enum

from proctorexam.services.clock import utcnow


class ExamSessionStatus(str, enum.Enum):
    ACTIVE = "active"
    SUBMITTED = "submitted"
    FORCE_SUBMITTED = "force_submitted"
    EXPIRED = "expired"
    VIOLATION_TERMINATED = "violation_terminated"


TERMINAL_STATUSES = frozenset(s for s in ExamSessionStatus if s != ExamSessionStatus.ACTIVE)


class ViolationType(str, enum.Enum):
    TAB_SWITCH = "tab_switch"
    WINDOW_BLUR = "window_blur"
    COPY_ATTEMPT = "copy_attempt"
    PASTE_ATTEMPT = "paste_attempt"
    RIGHT_CLICK = "right_click"
    DEV_TOOLS = "dev_tools"
    MULTIPLE_LOGIN = "multiple_login"
    IP_CHANGE = "ip_change"
    BROWSER_CHANGE = "browser_change"
    BACK_NAVIGATION = "back_navigation"
    REFRESH_ATTEMPT = "refresh_attempt"
    SCREENSHOT_ATTEMPT = "screenshot_attempt"
    SCREEN_SHARE_DETECTED = "screen_share_detected"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    CONNECTION_LOST = "connection_lost"
    INACTIVITY = "inactivity"
    FULLSCREEN_EXIT = "fullscreen_exit"
    PRINT_ATTEMPT = "print_attempt"
    KEYBOARD_SHORTCUT = "keyboard_shortcut"
    OTHER = "other"


def _enum(cls, name):
    return SAEnum(cls, name=name, values_callable=lambda e: [m.value for m in e])


class ExamSession(Base):
    """One student's timed attempt. ``session_token`` is the only capability."""
    __tablename__ = "exam_sessions"
    __table_args__ = (
        # at most one live attempt per (exam, student)
        Index(
            "uq_active_exam_student", "exam_id", "student_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_exam_sessions_exam_batch", "exam_id", "batch_number"),
        Index("ix_exam_sessions_status_end", "status", "server_end_time"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_token = Column(String(64), nullable=False, unique=True)

    exam_id = Column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    batch_number = Column(Integer, nullable=False, default=1)

    # binding
    ip_address = Column(String, nullable=False)
    browser_fingerprint = Column(String, nullable=False)
    user_agent = Column(String, nullable=True)

    # timing; server_end_time is written once at creation
    started_at = Column(DateTime, nullable=False, default=utcnow)
    server_end_time = Column(DateTime, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=False, default=utcnow)

    status = Column(_enum(ExamSessionStatus, "exam_session_status"), nullable=False,
                    default=ExamSessionStatus.ACTIVE)

    violation_count = Column(Integer, nullable=False, default=0)
    violation_warning_at = Column(Integer, nullable=False, default=3)
    max_violations_allowed = Column(Integer, nullable=False, default=5)

    autosave_count = Column(Integer, nullable=False, default=0)
    last_autosave_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_active(self) -> bool:
        return self.status == ExamSessionStatus.ACTIVE


class SessionAnswer(Base):
    """
    Per-question answer state. ``marks_obtained``/``is_correct`` reflect the
    last autosave until the attempt is finalized.
    """
    __tablename__ = "session_answers"
    __table_args__ = (UniqueConstraint("session_id", "question_id", name="uq_session_question"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Uuid, ForeignKey("questions.id"), nullable=False)

    # option id(s), free text, number, list or {"x", "y"} depending on the question type
    response = Column(json_type(), nullable=True)
    visited = Column(Boolean, nullable=False, default=False)
    marked_for_review = Column(Boolean, nullable=False, default=False)
    answered_at = Column(DateTime, nullable=True)
    time_taken = Column(Integer, nullable=False, default=0)  # seconds

    is_correct = Column(Boolean, nullable=True)
    marks_obtained = Column(Float, nullable=False, default=0)


class Violation(Base):
    """Append-only. ``ExamSession.violation_count`` is re-derived from these rows."""
    __tablename__ = "violations"
    __table_args__ = (Index("ix_violations_exam_student", "exam_id", "student_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    exam_id = Column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False)

    type = Column(_enum(ViolationType, "violation_type"), nullable=False)
    severity = Column(String, nullable=False, default="medium")
    detail = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    action_taken = Column(String, nullable=False, default="none")
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    # client supplied context (question number, screen resolution...)
    context = Column(MutableDict.as_mutable(json_type()), nullable=True, default=dict)
