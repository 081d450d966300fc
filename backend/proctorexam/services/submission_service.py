"""
Submission finalizer: seals an attempt at a terminal status and writes the
immutable ``Submission`` snapshot. ``finalize`` expects the caller to hold the
attempt lock and to commit.
"""
import enum
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.batch_model import ExamBatch
from ..models.exam_session_model import ExamSession, ExamSessionStatus
from ..models.submission_model import Submission, SubmissionType
from .audit_service import record_audit
from .clock import utcnow
from .locks import attempt_locks
from .scoring_service import grade_submission, is_blank
from .session_queries import (
    get_answers, get_exam, get_exam_questions, get_session_by_id, count_violations, commit_attempt,
)
from ..exceptions import SessionNotFound

logger = logging.getLogger(__name__)


class SubmissionTrigger(str, enum.Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    VIOLATION = "violation"
    ADMIN_FORCE = "admin_force"
    ADMIN_TERMINATE = "admin_terminate"
    BATCH_COMPLETE = "batch_complete"
    EXPIRY_SWEEP = "expiry_sweep"


# trigger -> (terminal status, submission type, audit action)
_TRIGGER_OUTCOME = {
    SubmissionTrigger.MANUAL: (ExamSessionStatus.SUBMITTED, SubmissionType.MANUAL, "submitted"),
    SubmissionTrigger.TIMEOUT: (ExamSessionStatus.FORCE_SUBMITTED, SubmissionType.AUTO_TIMEOUT, "force_submit"),
    SubmissionTrigger.VIOLATION: (
        ExamSessionStatus.VIOLATION_TERMINATED, SubmissionType.AUTO_VIOLATION, "session_terminated_violations",
    ),
    SubmissionTrigger.ADMIN_FORCE: (
        ExamSessionStatus.FORCE_SUBMITTED, SubmissionType.ADMIN_FORCE, "force_submitted_by_admin",
    ),
    SubmissionTrigger.ADMIN_TERMINATE: (
        ExamSessionStatus.VIOLATION_TERMINATED, SubmissionType.ADMIN_FORCE, "terminated_by_admin",
    ),
    SubmissionTrigger.BATCH_COMPLETE: (
        ExamSessionStatus.FORCE_SUBMITTED, SubmissionType.ADMIN_FORCE, "force_submitted_batch_complete",
    ),
    SubmissionTrigger.EXPIRY_SWEEP: (ExamSessionStatus.EXPIRED, SubmissionType.AUTO_TIMEOUT, "auto_submitted_expired"),
}

_DEFAULT_REASON = {
    SubmissionTrigger.TIMEOUT: "time_expired",
    SubmissionTrigger.EXPIRY_SWEEP: "time_expired",
    SubmissionTrigger.VIOLATION: "max_violations_exceeded",
    SubmissionTrigger.ADMIN_TERMINATE: "Admin termination",
    SubmissionTrigger.BATCH_COMPLETE: "Batch completed by admin",
}


async def get_submission_for_session(session: AsyncSession, session_id) -> Optional[Submission]:
    res = await session.execute(select(Submission).where(Submission.session_id == session_id))
    return res.scalar_one_or_none()


def submission_summary(sub: Submission) -> Dict[str, Any]:
    return {
        "submission_id": str(sub.id),
        "session_id": str(sub.session_id),
        "exam_id": str(sub.exam_id),
        "student_id": str(sub.student_id),
        "status": sub.status,
        "submission_type": sub.submission_type,
        "termination_reason": sub.termination_reason,
        "submitted_at": sub.submitted_at.isoformat(),
        "time_taken_seconds": sub.time_taken_seconds,
        "total_marks": sub.total_marks,
        "marks_obtained": sub.marks_obtained,
        "percentage": sub.percentage,
        "questions_attempted": sub.questions_attempted,
        "correct_answers": sub.correct_answers,
        "wrong_answers": sub.wrong_answers,
        "unattempted": sub.unattempted,
        "pending_manual_grade": sub.pending_manual_grade,
        "total_violations": sub.total_violations,
        "answers": sub.answers,
    }


async def _grade(session: AsyncSession, exam_session: ExamSession) -> Dict[str, Any]:
    exam = await get_exam(session, exam_session.exam_id)
    questions = await get_exam_questions(session, exam.id)
    answers = {str(a.question_id): a for a in await get_answers(session, exam_session.id)}
    scores, _ = grade_submission(
        {qid: a.response for qid, a in answers.items()}, questions, allow_negative=exam.negative_marking,
    )

    totals = {
        "total_marks": 0.0, "marks_obtained": 0.0, "questions_attempted": 0,
        "correct_answers": 0, "wrong_answers": 0, "unattempted": 0, "pending_manual_grade": 0,
    }
    breakdown: List[Dict[str, Any]] = []

    for q in questions:
        totals["total_marks"] += float(q.marks or 0)
        ans = answers.get(str(q.id))
        response = ans.response if ans is not None else None
        entry = {"question_id": str(q.id), "response": response, "marks_obtained": 0.0,
                 "is_correct": None, "pending_manual_grade": False}

        if is_blank(response):
            totals["unattempted"] += 1
            if ans is not None:
                ans.marks_obtained = 0.0
                ans.is_correct = None
            breakdown.append(entry)
            continue

        totals["questions_attempted"] += 1
        result = scores[str(q.id)]
        if result is None:
            # unscored, neither right nor wrong
            totals["pending_manual_grade"] += 1
            entry["marks_obtained"] = None
            entry["pending_manual_grade"] = True
            ans.marks_obtained = 0.0
            ans.is_correct = None
        else:
            correct = result > 0
            totals["correct_answers" if correct else "wrong_answers"] += 1
            totals["marks_obtained"] += result
            entry["marks_obtained"] = result
            entry["is_correct"] = correct
            ans.marks_obtained = result
            ans.is_correct = correct
        breakdown.append(entry)

    totals["total_marks"] = round(totals["total_marks"], 4)
    totals["marks_obtained"] = round(totals["marks_obtained"], 4)
    totals["percentage"] = (
        round(totals["marks_obtained"] / totals["total_marks"] * 100, 2) if totals["total_marks"] > 0 else 0.0
    )
    totals["answers"] = breakdown
    return totals


async def finalize(
    session: AsyncSession,
    exam_session: ExamSession,
    trigger: SubmissionTrigger,
    reason: Optional[str] = None,
    ip_address: Optional[str] = None,
    actor_id=None,
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Seal ``exam_session`` and return its submission summary.

    Idempotent: when a snapshot already exists it is returned unchanged and
    nothing else is written (no status change, no audit entry, no stats).
    """
    existing = await get_submission_for_session(session, exam_session.id)
    if existing is not None:
        return submission_summary(existing)

    now = now or utcnow()
    status, submission_type, action = _TRIGGER_OUTCOME[trigger]
    reason = reason or _DEFAULT_REASON.get(trigger)

    if exam_session.is_active:
        exam_session.status = status
        exam_session.submitted_at = now
    else:
        # already closed without a snapshot: keep the recorded status
        status = exam_session.status
    submitted_at = exam_session.submitted_at or now

    violations = await count_violations(session, exam_session.id)
    exam_session.violation_count = violations

    audit_details = {"trigger": trigger.value, "reason": reason, "total_violations": violations}
    audit_details.update(details or {})
    record_audit(session, action, "session", exam_session.id, audit_details, ip_address, actor_id)

    graded = await _grade(session, exam_session)
    sub = Submission(
        session_id=exam_session.id,
        exam_id=exam_session.exam_id,
        student_id=exam_session.student_id,
        batch_number=exam_session.batch_number,
        status=ExamSessionStatus(status).value,
        submission_type=submission_type.value,
        termination_reason=reason,
        started_at=exam_session.started_at,
        server_end_time=exam_session.server_end_time,
        submitted_at=submitted_at,
        time_taken_seconds=max(0, int((submitted_at - exam_session.started_at).total_seconds())),
        total_violations=violations,
        submission_ip=ip_address,
        **graded,
    )
    session.add(sub)

    # batch stats only move while the batch is unlocked
    await session.execute(
        update(ExamBatch)
        .where(
            ExamBatch.exam_id == exam_session.exam_id,
            ExamBatch.batch_number == exam_session.batch_number,
            ExamBatch.is_locked == False,  # noqa: E712
        )
        .values(
            total_submitted=ExamBatch.total_submitted + 1,
            total_violations=ExamBatch.total_violations + violations,
        )
        .execution_options(synchronize_session=False)
    )
    await session.flush()

    logger.info(
        "Finalized session %s as %s (%s): %s/%s marks",
        exam_session.id, sub.status, sub.submission_type, sub.marks_obtained, sub.total_marks,
    )
    return submission_summary(sub)


async def admin_finalize(
    session: AsyncSession,
    session_id,
    actor_id,
    terminate: bool = False,
    reason: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Dict[str, Any]:
    """Administrator force-submit (or terminate) of a live attempt."""
    exam_session = await get_session_by_id(session, session_id)
    if exam_session is None:
        raise SessionNotFound()
    trigger = SubmissionTrigger.ADMIN_TERMINATE if terminate else SubmissionTrigger.ADMIN_FORCE
    async with attempt_locks.hold(exam_session.session_token):
        exam_session = await get_session_by_id(session, session_id)
        summary = await finalize(
            session, exam_session, trigger, reason=reason, ip_address=ip_address,
            actor_id=actor_id, details={"admin_id": str(actor_id) if actor_id else None},
        )
        await commit_attempt(session)
    return summary


async def list_submissions(session: AsyncSession, exam_id=None, student_id=None) -> List[Submission]:
    stmt = select(Submission)
    if exam_id is not None:
        stmt = stmt.where(Submission.exam_id == exam_id)
    if student_id is not None:
        stmt = stmt.where(Submission.student_id == student_id)
    res = await session.execute(stmt.order_by(Submission.submitted_at.desc()))
    return list(res.scalars().all())
