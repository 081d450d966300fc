from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db import get_async_session
from ..dependencies import current_admin, client_binding, ClientBinding
from ..exceptions import SessionNotFound
from ..schemas.session_schema import AdminActionRequest, LiveSession, SubmissionSummary, SweepResult
from ..services import session_service
from ..services.audit_service import get_audit_trail
from ..services.session_queries import get_session_by_id
from ..services.submission_service import admin_finalize
from ..services.violation_service import violation_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitor", tags=["Monitor"], dependencies=[Depends(current_admin)])


@router.get("/sessions", response_model=List[LiveSession])
async def live_sessions(exam_id: Optional[UUID] = Query(None), session: AsyncSession = Depends(get_async_session)):
    return await session_service.list_live_sessions(session, exam_id)


@router.post("/sessions/{session_id}/force-submit", response_model=SubmissionSummary)
async def force_submit(
    session_id: UUID,
    payload: Optional[AdminActionRequest] = None,
    admin=Depends(current_admin),
    binding: ClientBinding = Depends(client_binding),
    session: AsyncSession = Depends(get_async_session),
):
    logger.info("Admin %s force-submitting session %s", admin.id, session_id)
    return await admin_finalize(
        session, session_id, admin.id, terminate=False,
        reason=payload.reason if payload else None, ip_address=binding.ip_address,
    )


@router.post("/sessions/{session_id}/terminate", response_model=SubmissionSummary)
async def terminate(
    session_id: UUID,
    payload: Optional[AdminActionRequest] = None,
    admin=Depends(current_admin),
    binding: ClientBinding = Depends(client_binding),
    session: AsyncSession = Depends(get_async_session),
):
    logger.info("Admin %s terminating session %s", admin.id, session_id)
    return await admin_finalize(
        session, session_id, admin.id, terminate=True,
        reason=payload.reason if payload else None, ip_address=binding.ip_address,
    )


@router.get("/sessions/{session_id}/violations")
async def session_violations(session_id: UUID, session: AsyncSession = Depends(get_async_session)):
    exam_session = await get_session_by_id(session, session_id)
    if exam_session is None:
        raise SessionNotFound()
    return await violation_summary(session, exam_session)


@router.get("/sessions/{session_id}/audit")
async def session_audit(session_id: UUID, session: AsyncSession = Depends(get_async_session)):
    rows = await get_audit_trail(session, "session", session_id)
    return [
        {
            "action": r.action,
            "actor_id": str(r.actor_id) if r.actor_id else None,
            "ip_address": r.ip_address,
            "details": dict(r.details or {}),
            "timestamp": r.timestamp,
        }
        for r in rows
    ]


@router.post("/sweep", response_model=SweepResult)
async def sweep(session: AsyncSession = Depends(get_async_session)):
    return await session_service.sweep_expired_sessions(session)
