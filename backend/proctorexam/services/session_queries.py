import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..models.exam_model import Exam, exam_questions
from ..models.question_model import QuestionDB
from ..models.exam_session_model import ExamSession, SessionAnswer, Violation
from ..exceptions import ExamNotFound, SessionNotFound, ConcurrentModification
from .clock import utcnow

logger = logging.getLogger(__name__)


async def get_session_by_token(session: AsyncSession, token: str) -> Optional[ExamSession]:
    # populate_existing: always re-read, another request may have changed the row
    res = await session.execute(
        select(ExamSession)
        .where(ExamSession.session_token == token)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def require_session_by_token(session: AsyncSession, token: str) -> ExamSession:
    exam_session = await get_session_by_token(session, token)
    if exam_session is None:
        raise SessionNotFound()
    return exam_session


async def get_session_by_id(session: AsyncSession, session_id) -> Optional[ExamSession]:
    res = await session.execute(
        select(ExamSession)
        .where(ExamSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_exam(session: AsyncSession, exam_id) -> Exam:
    res = await session.execute(select(Exam).where(Exam.id == exam_id).execution_options(populate_existing=True))
    exam = res.scalar_one_or_none()
    if exam is None:
        raise ExamNotFound()
    return exam


async def _get_exam_qids(session: AsyncSession, exam_id):
    qstmt = select(exam_questions.c.question_id).where(exam_questions.c.exam_id == exam_id).order_by(exam_questions.c.order)
    qres = await session.execute(qstmt)
    return qres.scalars().all()


async def _get_questions_for_exam(session: AsyncSession, qids: List, active_only: bool = True):
    if not qids:
        return []
    qstmt = select(QuestionDB).where(QuestionDB.id.in_(qids))
    if active_only:
        qstmt = qstmt.where(QuestionDB.is_active == True)  # noqa: E712
    qres = await session.execute(qstmt)
    # Preserve order from qids
    qmap = {str(q.id): q for q in qres.scalars().all()}
    ordered = [qmap[str(qid)] for qid in qids if str(qid) in qmap]
    return ordered


async def get_exam_questions(session: AsyncSession, exam_id) -> List[QuestionDB]:
    """Active questions of an exam in exam order."""
    qids = await _get_exam_qids(session, exam_id)
    return await _get_questions_for_exam(session, qids)


async def get_answers(session: AsyncSession, session_id) -> List[SessionAnswer]:
    res = await session.execute(
        select(SessionAnswer)
        .where(SessionAnswer.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def count_violations(session: AsyncSession, session_id) -> int:
    res = await session.execute(select(func.count(Violation.id)).where(Violation.session_id == session_id))
    return int(res.scalar_one())


def remaining_seconds(exam_session: ExamSession, now: Optional[datetime] = None) -> int:
    """``max(0, server_end_time - now)`` in whole seconds; 0 once the attempt is closed."""
    if not exam_session.is_active:
        return 0
    now = now or utcnow()
    return max(0, int((exam_session.server_end_time - now).total_seconds()))


def is_past_deadline(exam_session: ExamSession, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) > exam_session.server_end_time


async def commit_attempt(session: AsyncSession) -> None:
    """Commit an attempt change; a lost optimistic version check becomes ``ConcurrentModification``."""
    try:
        await session.commit()
    except StaleDataError:
        await session.rollback()
        logger.warning("Concurrent modification of an exam session, rolled back")
        raise ConcurrentModification()
