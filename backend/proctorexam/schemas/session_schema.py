from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from uuid import UUID
from datetime import datetime

from proctorexam.models.exam_session_model import ViolationType


class StartSessionRequest(BaseModel):
    # also accepted from the X-Browser-Fingerprint header
    fingerprint: Optional[str] = None


class PaletteEntry(BaseModel):
    number: int
    question_id: UUID
    state: str


class AnswerState(BaseModel):
    question_id: UUID
    response: Any = None
    visited: bool
    marked_for_review: bool
    answered_at: Optional[datetime] = None
    time_taken: int = 0


class AttemptView(BaseModel):
    session_id: UUID
    session_token: str
    exam_id: UUID
    student_id: UUID
    batch_number: int
    status: str
    started_at: datetime
    server_end_time: datetime
    server_time: datetime
    remaining_seconds: int
    violation_count: int
    max_violations: int
    resumed: bool = False
    questions: List[Dict[str, Any]] = []
    answers: List[AnswerState] = []
    palette: List[PaletteEntry] = []


class ValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    session_id: UUID
    status: str
    remaining_seconds: int
    server_end_time: datetime


class HeartbeatResponse(BaseModel):
    status: str
    remaining_seconds: int
    server_end_time: datetime
    server_time: datetime
    violation_count: int
    max_violations: int
    terminated: bool
    valid: bool
    reason: Optional[str] = None


class SaveAnswerRequest(BaseModel):
    """Autosave payload. Fields that are not sent are left unchanged."""
    question_id: UUID
    response: Any = None
    marked_for_review: Optional[bool] = None
    visited: Optional[bool] = None
    time_taken: Optional[int] = Field(default=None, ge=0)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"question_id"})


class SaveAnswerResponse(BaseModel):
    saved: bool
    question_id: UUID
    state: str
    remaining_seconds: int
    autosave_count: int


class ViolationReport(BaseModel):
    type: ViolationType
    detail: Optional[str] = Field(default=None, max_length=1000)
    context: Optional[Dict[str, Any]] = None

    @field_validator("detail")
    @classmethod
    def strip_detail(cls, v):
        return v.strip() if isinstance(v, str) else v


class ViolationResponse(BaseModel):
    acknowledged: bool
    recorded: bool = False
    violation_count: int
    max_violations: int
    remaining_violations: Optional[int] = None
    action: Optional[str] = None
    warning_message: Optional[str] = None
    terminated: bool
    status: Optional[str] = None


class QuestionBreakdown(BaseModel):
    question_id: UUID
    response: Any = None
    marks_obtained: Optional[float] = None
    is_correct: Optional[bool] = None
    pending_manual_grade: bool = False


class SubmissionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    submission_id: UUID
    session_id: UUID
    exam_id: UUID
    student_id: UUID
    status: str
    submission_type: str
    termination_reason: Optional[str] = None
    submitted_at: datetime
    time_taken_seconds: int
    total_marks: float
    marks_obtained: float
    percentage: float
    questions_attempted: int
    correct_answers: int
    wrong_answers: int
    unattempted: int
    pending_manual_grade: int
    total_violations: int
    answers: List[QuestionBreakdown] = []


class AdminActionRequest(BaseModel):
    reason: Optional[str] = None


class LiveSession(BaseModel):
    session_id: UUID
    exam_id: UUID
    student_id: UUID
    batch_number: int
    status: str
    started_at: datetime
    server_end_time: datetime
    remaining_seconds: int
    overdue: bool
    violation_count: int
    max_violations: int
    ip_address: Optional[str] = None
    last_activity_at: Optional[datetime] = None


class SweepResult(BaseModel):
    expired: int
    session_ids: List[UUID]
    swept_at: datetime
