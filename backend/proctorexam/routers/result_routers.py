from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_async_session
from ..dependencies import current_admin
from ..schemas.session_schema import SubmissionSummary
from ..services.submission_service import list_submissions, submission_summary
from ..services.violation_service import list_exam_violations, violation_to_dict

router = APIRouter(tags=["Results"], dependencies=[Depends(current_admin)])


@router.get("/exams/{exam_id}/submissions", response_model=List[SubmissionSummary])
async def exam_submissions(
    exam_id: UUID,
    student_id: Optional[UUID] = Query(None),
    session: AsyncSession = Depends(get_async_session),
):
    """Submission snapshots of an exam, newest first; optionally one student's."""
    rows = await list_submissions(session, exam_id=exam_id, student_id=student_id)
    return [submission_summary(r) for r in rows]


@router.get("/exams/{exam_id}/violations")
async def exam_violations(
    exam_id: UUID,
    student_id: Optional[UUID] = Query(None),
    session: AsyncSession = Depends(get_async_session),
):
    rows = await list_exam_violations(session, exam_id, student_id)
    return [violation_to_dict(v) for v in rows]
