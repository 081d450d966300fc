"""
Session manager: the token-level API of an exam attempt.

Every operation that can change an attempt runs under ``attempt_locks`` for
the session token and re-reads the row inside the lock, so autosave,
violation reports, heartbeat-triggered expiry and submit on one attempt are
applied one at a time. Remaining time is always ``server_end_time - now``;
nothing a client sends moves the deadline.
"""
import logging
import random
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.exam_model import Exam
from ..models.exam_session_model import ExamSession, ExamSessionStatus, ViolationType
from ..models.submission_model import Submission
from ..exceptions import (
    AttemptsExhausted, DeviceMismatch, ExamNotAvailable, ExamWindowClosed,
    SessionExpired, SessionTerminated, SubmissionNotFound, ConcurrentModification,
)
from .answer_service import _sanitize_question, _save_answer_locked, answer_to_dict, palette_state, question_palette
from .audit_service import record_audit
from .batch_service import admit_student
from .binding_policy import get_binding_policy
from .clock import utcnow
from .locks import attempt_locks
from .session_queries import (
    commit_attempt, get_answers, get_exam, get_exam_questions, get_session_by_id,
    is_past_deadline, remaining_seconds, require_session_by_token,
)
from .submission_service import SubmissionTrigger, finalize, get_submission_for_session, submission_summary
from .violation_service import _record_violation_locked

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return secrets.token_hex(32)


_REASON_ERRORS = {
    "session_expired": SessionExpired,
    "session_terminated": SessionTerminated,
}


def _error_for(reason: str):
    cls = _REASON_ERRORS.get(reason)
    if cls is not None:
        return cls()
    # binding failures all look the same from outside
    return DeviceMismatch(reason=reason)


async def _active_session_for(session: AsyncSession, exam_id, student_id) -> Optional[ExamSession]:
    res = await session.execute(
        select(ExamSession)
        .where(
            ExamSession.exam_id == exam_id,
            ExamSession.student_id == student_id,
            ExamSession.status == ExamSessionStatus.ACTIVE,
        )
        .execution_options(populate_existing=True)
    )
    rows = res.scalars().all()
    if len(rows) > 1:
        logger.warning("Multiple active ExamSession rows for exam_id=%s student_id=%s, using first row", exam_id, student_id)
    return rows[0] if rows else None


async def _attempt_view(
    session: AsyncSession, exam_session: ExamSession, now: Optional[datetime] = None, resumed: bool = False,
) -> Dict[str, Any]:
    now = now or utcnow()
    questions = await get_exam_questions(session, exam_session.exam_id)
    answers = await get_answers(session, exam_session.id)
    # same shuffle every time this attempt is rendered
    rng = random.Random(str(exam_session.id))
    return {
        "session_id": str(exam_session.id),
        "session_token": exam_session.session_token,
        "exam_id": str(exam_session.exam_id),
        "student_id": str(exam_session.student_id),
        "batch_number": exam_session.batch_number,
        "status": exam_session.status.value,
        "started_at": exam_session.started_at,
        "server_end_time": exam_session.server_end_time,
        "server_time": now,
        "remaining_seconds": remaining_seconds(exam_session, now),
        "violation_count": exam_session.violation_count,
        "max_violations": exam_session.max_violations_allowed,
        "resumed": resumed,
        "questions": [_sanitize_question(q, rng) for q in questions],
        "answers": [answer_to_dict(a) for a in answers],
        "palette": question_palette(questions, answers),
    }


async def _validate_locked(
    session: AsyncSession,
    exam_session: ExamSession,
    ip_address: Optional[str],
    fingerprint: Optional[str],
    now: datetime,
    check_binding: bool = True,
) -> Optional[str]:
    """
    None when the attempt may proceed, otherwise the reason code. Side
    effects (expiry finalize, binding violations, rebinding) are staged on the
    session for the caller to commit.
    """
    if not exam_session.is_active:
        return "session_terminated"

    if is_past_deadline(exam_session, now):
        await finalize(session, exam_session, SubmissionTrigger.TIMEOUT, ip_address=ip_address, now=now)
        return "session_expired"

    if check_binding:
        exam = await get_exam(session, exam_session.exam_id)
        outcome = get_binding_policy(exam.binding_mode).evaluate(exam_session, ip_address, fingerprint)
        for violation_type, detail in outcome.violations:
            if not exam_session.is_active:
                break
            await _record_violation_locked(
                session, exam_session, violation_type, detail, ip_address, now=now,
            )
        if not exam_session.is_active:
            return "session_terminated"
        if not outcome.allowed:
            logger.warning("Session %s denied: %s", exam_session.id, outcome.reason)
            return outcome.reason
        if outcome.rebind_ip:
            exam_session.ip_address = outcome.rebind_ip
        if outcome.rebind_fingerprint:
            exam_session.browser_fingerprint = outcome.rebind_fingerprint

    exam_session.last_activity_at = now
    return None


async def _resume_or_deny(
    session: AsyncSession, existing: ExamSession, ip_address: str, fingerprint: str, now: datetime,
) -> Optional[Dict[str, Any]]:
    """
    Resume ``existing`` for the same browser. Returns None when it turned out
    to be past its deadline (it is finalized and a new attempt may follow).
    """
    async with attempt_locks.hold(existing.session_token):
        existing = await get_session_by_id(session, existing.id)
        if not existing.is_active:
            return None
        if is_past_deadline(existing, now):
            await finalize(session, existing, SubmissionTrigger.TIMEOUT, ip_address=ip_address, now=now)
            await commit_attempt(session)
            return None

        if existing.browser_fingerprint != fingerprint:
            await _record_violation_locked(
                session, existing, ViolationType.MULTIPLE_LOGIN,
                "Start attempted from a different browser while a session is active", ip_address, now=now,
            )
            await commit_attempt(session)
            raise DeviceMismatch(reason="session_binding_failed")

        if existing.ip_address != ip_address:
            reason = await _validate_locked(session, existing, ip_address, fingerprint, now)
            if reason is not None:
                await commit_attempt(session)
                raise _error_for(reason)
        existing.last_activity_at = now
        record_audit(session, "session_resumed", "session", existing.id, {"ip": ip_address}, ip_address)
        await commit_attempt(session)

    logger.info("Resumed exam session %s for student %s", existing.id, existing.student_id)
    return await _attempt_view(session, existing, now, resumed=True)


def _check_window(exam: Exam, now: datetime) -> None:
    if exam.start_time and now < exam.start_time:
        raise ExamWindowClosed("Exam has not started yet", reason="exam_not_started")
    if exam.end_time and now > exam.end_time:
        raise ExamWindowClosed("Exam has ended", reason="exam_ended")


async def create_session(
    session: AsyncSession,
    exam_id,
    student_id,
    ip_address: str,
    fingerprint: str,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Start an attempt, or resume the student's live one.

    ``server_end_time`` is fixed here, once: ``now + duration`` capped at the
    exam window end.
    """
    now = now or utcnow()
    exam = await get_exam(session, exam_id)
    if not exam.is_published:
        raise ExamNotAvailable()

    existing = await _active_session_for(session, exam.id, student_id)
    if existing is not None:
        view = await _resume_or_deny(session, existing, ip_address, fingerprint, now)
        if view is not None:
            return view

    res = await session.execute(
        select(func.count(Submission.id)).where(Submission.exam_id == exam.id, Submission.student_id == student_id)
    )
    if res.scalar_one() >= (exam.max_attempts or 1):
        raise AttemptsExhausted()

    _check_window(exam, now)

    batch_number = 1
    if exam.enable_batching:
        batch = await admit_student(session, exam, student_id)
        batch_number = batch.batch_number

    server_end_time = now + timedelta(minutes=exam.duration)
    if exam.end_time and exam.end_time < server_end_time:
        server_end_time = exam.end_time

    new_session = ExamSession(
        session_token=_new_token(),
        exam_id=exam.id,
        student_id=student_id,
        batch_number=batch_number,
        ip_address=ip_address,
        browser_fingerprint=fingerprint,
        user_agent=user_agent,
        started_at=now,
        server_end_time=server_end_time,
        last_activity_at=now,
        status=ExamSessionStatus.ACTIVE,
        violation_count=0,
        violation_warning_at=exam.max_violations_before_warning,
        max_violations_allowed=exam.max_violations_before_submit,
    )
    exam_pk = exam.id
    session.add(new_session)
    try:
        await session.flush()
        record_audit(
            session, "session_created", "session", new_session.id,
            {"exam_id": str(exam.id), "batch_number": batch_number,
             "server_end_time": server_end_time.isoformat(), "user_agent": user_agent},
            ip_address, actor_id=student_id,
        )
        await session.commit()
    except IntegrityError:
        # lost the race against a concurrent start, the seat goes back with the rollback
        await session.rollback()
        logger.warning("Concurrent start for exam_id=%s student_id=%s, resuming the other attempt", exam_pk, student_id)
        existing = await _active_session_for(session, exam_pk, student_id)
        if existing is None:
            raise
        view = await _resume_or_deny(session, existing, ip_address, fingerprint, now)
        if view is None:
            raise SessionExpired()
        return view

    logger.info(
        "Created exam session %s for student %s (exam %s, batch %s, ends %s)",
        new_session.id, student_id, exam.id, batch_number, server_end_time,
    )
    return await _attempt_view(session, new_session, now)


async def validate_session(
    session: AsyncSession, token: str, ip_address: str, fingerprint: Optional[str], now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """``{"valid": bool, "reason": code|None, ...}``; never raises for an invalid attempt."""
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        reason = await _validate_locked(session, exam_session, ip_address, fingerprint, now)
        await commit_attempt(session)
    return {
        "valid": reason is None,
        "reason": reason,
        "session_id": str(exam_session.id),
        "status": exam_session.status.value,
        "remaining_seconds": remaining_seconds(exam_session, now),
        "server_end_time": exam_session.server_end_time,
    }


async def get_attempt_view(
    session: AsyncSession, token: str, ip_address: str, fingerprint: Optional[str], now: Optional[datetime] = None,
) -> Dict[str, Any]:
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        reason = await _validate_locked(session, exam_session, ip_address, fingerprint, now)
        await commit_attempt(session)
    if reason is not None:
        raise _error_for(reason)
    return await _attempt_view(session, exam_session, now, resumed=True)


async def heartbeat(
    session: AsyncSession,
    token: str,
    ip_address: Optional[str] = None,
    fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Re-sync the client clock. Safe to repeat: on a closed attempt it only
    reports state. Binding is checked when both IP and fingerprint are given.
    """
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        reason = None
        if exam_session.is_active:
            reason = await _validate_locked(
                session, exam_session, ip_address, fingerprint, now,
                check_binding=ip_address is not None and fingerprint is not None,
            )
            await commit_attempt(session)
    return {
        "status": exam_session.status.value,
        "remaining_seconds": remaining_seconds(exam_session, now),
        "server_end_time": exam_session.server_end_time,
        "server_time": now,
        "violation_count": exam_session.violation_count,
        "max_violations": exam_session.max_violations_allowed,
        "terminated": not exam_session.is_active,
        "valid": exam_session.is_active and reason is None,
        "reason": reason,
    }


async def save_answer(
    session: AsyncSession,
    token: str,
    question_id,
    changes: Dict[str, Any],
    ip_address: str,
    fingerprint: Optional[str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        reason = await _validate_locked(session, exam_session, ip_address, fingerprint, now)
        if reason is not None:
            await commit_attempt(session)
            raise _error_for(reason)
        answer = await _save_answer_locked(session, exam_session, question_id, changes, now)
        await commit_attempt(session)
    return {
        "saved": True,
        "question_id": str(question_id),
        "state": palette_state(answer),
        "remaining_seconds": remaining_seconds(exam_session, now),
        "autosave_count": exam_session.autosave_count,
    }


async def report_violation(
    session: AsyncSession,
    token: str,
    violation_type: ViolationType,
    detail: Optional[str] = None,
    context: Optional[dict] = None,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        exam = await get_exam(session, exam_session.exam_id)
        if not exam.enable_proctoring:
            return {
                "acknowledged": False,
                "violation_count": exam_session.violation_count,
                "max_violations": exam_session.max_violations_allowed,
                "terminated": not exam_session.is_active,
            }
        if exam_session.is_active and is_past_deadline(exam_session, now):
            await finalize(session, exam_session, SubmissionTrigger.TIMEOUT, ip_address=ip_address, now=now)
            result = {"recorded": False, "action": "none", "warning_message": None, "remaining_violations": 0}
        else:
            result = await _record_violation_locked(
                session, exam_session, violation_type, detail, ip_address, context, now,
            )
        await commit_attempt(session)

    result.update(
        acknowledged=True,
        violation_count=exam_session.violation_count,
        max_violations=exam_session.max_violations_allowed,
        terminated=not exam_session.is_active,
        status=exam_session.status.value,
    )
    return result


async def submit(
    session: AsyncSession,
    token: str,
    ip_address: str,
    fingerprint: Optional[str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Manual submit. On an attempt that is already closed (timeout, violation,
    admin, an earlier submit) the stored snapshot is returned unchanged.
    """
    exam_session = await require_session_by_token(session, token)
    async with attempt_locks.hold(token):
        exam_session = await require_session_by_token(session, token)
        now = now or utcnow()
        reason = await _validate_locked(session, exam_session, ip_address, fingerprint, now)
        if reason not in (None, "session_expired", "session_terminated"):
            await commit_attempt(session)
            raise _error_for(reason)
        summary = await finalize(session, exam_session, SubmissionTrigger.MANUAL, ip_address=ip_address, now=now)
        await commit_attempt(session)
    return summary


async def get_session_submission(session: AsyncSession, token: str) -> Dict[str, Any]:
    exam_session = await require_session_by_token(session, token)
    sub = await get_submission_for_session(session, exam_session.id)
    if sub is None:
        raise SubmissionNotFound()
    return submission_summary(sub)


async def sweep_expired_sessions(session: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Finalize every live attempt whose deadline passed without anyone asking."""
    now = now or utcnow()
    res = await session.execute(
        select(ExamSession.id, ExamSession.session_token).where(
            ExamSession.status == ExamSessionStatus.ACTIVE,
            ExamSession.server_end_time < now,
        )
    )
    expired = []
    for session_id, token in res.all():
        async with attempt_locks.hold(token):
            exam_session = await get_session_by_id(session, session_id)
            if exam_session is None or not exam_session.is_active or not is_past_deadline(exam_session, now):
                continue
            await finalize(session, exam_session, SubmissionTrigger.EXPIRY_SWEEP, now=now)
            try:
                await commit_attempt(session)
            except ConcurrentModification:
                # another worker closed it first
                logger.warning("Sweep lost the race for session %s", session_id)
                continue
        expired.append(str(session_id))

    if expired:
        logger.info("Expiry sweep finalized %d session(s)", len(expired))
    return {"expired": len(expired), "session_ids": expired, "swept_at": now}


async def list_live_sessions(session: AsyncSession, exam_id=None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    stmt = select(ExamSession).where(ExamSession.status == ExamSessionStatus.ACTIVE)
    if exam_id is not None:
        stmt = stmt.where(ExamSession.exam_id == exam_id)
    res = await session.execute(stmt.order_by(ExamSession.started_at).execution_options(populate_existing=True))
    out = []
    for s in res.scalars().all():
        out.append({
            "session_id": str(s.id),
            "exam_id": str(s.exam_id),
            "student_id": str(s.student_id),
            "batch_number": s.batch_number,
            "status": s.status.value,
            "started_at": s.started_at,
            "server_end_time": s.server_end_time,
            "remaining_seconds": remaining_seconds(s, now),
            "overdue": is_past_deadline(s, now),
            "violation_count": s.violation_count,
            "max_violations": s.max_violations_allowed,
            "ip_address": s.ip_address,
            "last_activity_at": s.last_activity_at,
        })
    return out
