from fastapi import APIRouter, Depends, HTTPException, status
from typing import List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db import get_async_session
from ..dependencies import current_student, client_binding, ClientBinding
from ..exceptions import ProctorError
from ..schemas.session_schema import (
    StartSessionRequest, AttemptView, ValidateResponse, HeartbeatResponse,
    SaveAnswerRequest, SaveAnswerResponse, ViolationReport, ViolationResponse, SubmissionSummary,
)
from ..schemas.batch_schema import BatchStatusResponse
from ..services import session_service
from ..services.batch_service import check_student_batch_status
from ..services.submission_service import list_submissions, submission_summary

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/exams/{exam_id}/sessions", response_model=AttemptView)
async def start_session(
    exam_id: UUID,
    payload: Optional[StartSessionRequest] = None,
    user=Depends(current_student),
    binding: ClientBinding = Depends(client_binding),
    session: AsyncSession = Depends(get_async_session),
):
    fingerprint = binding.fingerprint or (payload.fingerprint if payload else None)
    if not fingerprint:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Browser fingerprint is required")
    try:
        return await session_service.create_session(
            session, exam_id, user.id, binding.ip_address, fingerprint, binding.user_agent,
        )
    except (HTTPException, ProctorError):
        raise
    except Exception as e:
        logger.exception("Error while starting exam_id=%s student_id=%s: %s", exam_id, user.id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not start the exam")


@router.get("/exams/{exam_id}/batch-status", response_model=BatchStatusResponse)
async def batch_status(exam_id: UUID, user=Depends(current_student), session: AsyncSession = Depends(get_async_session)):
    return await check_student_batch_status(session, exam_id, user.id)


@router.get("/student/results", response_model=List[SubmissionSummary])
async def get_student_results(user=Depends(current_student), session: AsyncSession = Depends(get_async_session)):
    rows = await list_submissions(session, student_id=user.id)
    return [submission_summary(r) for r in rows]


# Attempt endpoints: the session token is the only credential.

@router.get("/sessions/{token}", response_model=AttemptView)
async def get_attempt(token: str, binding: ClientBinding = Depends(client_binding), session: AsyncSession = Depends(get_async_session)):
    return await session_service.get_attempt_view(session, token, binding.ip_address, binding.fingerprint)


@router.post("/sessions/{token}/validate", response_model=ValidateResponse)
async def validate(token: str, binding: ClientBinding = Depends(client_binding), session: AsyncSession = Depends(get_async_session)):
    return await session_service.validate_session(session, token, binding.ip_address, binding.fingerprint)


@router.post("/sessions/{token}/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(token: str, binding: ClientBinding = Depends(client_binding), session: AsyncSession = Depends(get_async_session)):
    return await session_service.heartbeat(session, token, binding.ip_address, binding.fingerprint)


@router.put("/sessions/{token}/answers", response_model=SaveAnswerResponse)
async def save_answer(
    token: str,
    payload: SaveAnswerRequest,
    binding: ClientBinding = Depends(client_binding),
    session: AsyncSession = Depends(get_async_session),
):
    try:
        return await session_service.save_answer(
            session, token, payload.question_id, payload.changes(), binding.ip_address, binding.fingerprint,
        )
    except (HTTPException, ProctorError):
        raise
    except Exception as e:
        logger.exception("Error while autosaving session %s: %s", token[:8], e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error while saving answer")


@router.post("/sessions/{token}/violations", response_model=ViolationResponse)
async def report_violation(
    token: str,
    payload: ViolationReport,
    binding: ClientBinding = Depends(client_binding),
    session: AsyncSession = Depends(get_async_session),
):
    return await session_service.report_violation(
        session, token, payload.type, payload.detail, payload.context, binding.ip_address,
    )


@router.post("/sessions/{token}/submit", response_model=SubmissionSummary)
async def submit(token: str, binding: ClientBinding = Depends(client_binding), session: AsyncSession = Depends(get_async_session)):
    try:
        return await session_service.submit(session, token, binding.ip_address, binding.fingerprint)
    except (HTTPException, ProctorError):
        raise
    except Exception as e:
        logger.exception("Error while submitting session %s: %s", token[:8], e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error while submitting")


@router.get("/sessions/{token}/submission", response_model=SubmissionSummary)
async def get_submission(token: str, session: AsyncSession = Depends(get_async_session)):
    return await session_service.get_session_submission(session, token)
