from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from uuid import UUID
from datetime import datetime


class GenerateBatchesRequest(BaseModel):
    students: List[UUID] = Field(min_length=1)
    batch_size: Optional[int] = Field(default=None, gt=0)
    start_time: Optional[datetime] = None


class BatchRead(BaseModel):
    id: UUID
    exam_id: UUID
    batch_number: int
    status: str
    max_capacity: int
    current_count: int
    student_count: int
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    total_enrolled: int
    total_attempted: int
    total_submitted: int
    total_violations: int
    is_locked: bool
    locked_at: Optional[datetime] = None


class BatchStatusResponse(BaseModel):
    can_login: bool
    reason: str
    server_time: datetime
    batch_number: Optional[int] = None
    batch_status: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


class AdvanceResult(BaseModel):
    started: List[UUID] = []
    completed: List[UUID] = []
    errors: List[Dict[str, Any]] = []
