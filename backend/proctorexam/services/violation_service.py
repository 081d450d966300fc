"""
Violation tracker. Every report appends a row, re-derives the session count
from the rows and escalates: warning tier first, then termination through the
submission finalizer once ``max_violations_allowed`` is reached.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.exam_session_model import ExamSession, Violation, ViolationType
from .audit_service import record_audit
from .clock import utcnow
from .session_queries import count_violations
from .submission_service import SubmissionTrigger, finalize

logger = logging.getLogger(__name__)

SEVERITY = {
    ViolationType.TAB_SWITCH: "medium",
    ViolationType.WINDOW_BLUR: "low",
    ViolationType.COPY_ATTEMPT: "high",
    ViolationType.PASTE_ATTEMPT: "high",
    ViolationType.RIGHT_CLICK: "low",
    ViolationType.DEV_TOOLS: "critical",
    ViolationType.MULTIPLE_LOGIN: "critical",
    ViolationType.IP_CHANGE: "medium",
    ViolationType.BROWSER_CHANGE: "critical",
    ViolationType.BACK_NAVIGATION: "low",
    ViolationType.REFRESH_ATTEMPT: "low",
    ViolationType.SCREENSHOT_ATTEMPT: "high",
    ViolationType.SCREEN_SHARE_DETECTED: "critical",
    ViolationType.FINGERPRINT_MISMATCH: "critical",
    ViolationType.CONNECTION_LOST: "low",
    ViolationType.INACTIVITY: "low",
    ViolationType.FULLSCREEN_EXIT: "medium",
    ViolationType.PRINT_ATTEMPT: "high",
    ViolationType.KEYBOARD_SHORTCUT: "medium",
    ViolationType.OTHER: "medium",
}

ACTION_NONE = "none"
ACTION_WARNING = "warning"
ACTION_AUTO_SUBMIT = "auto_submit"


def _action_for(exam_session: ExamSession, count: int) -> str:
    if count >= exam_session.max_violations_allowed:
        return ACTION_AUTO_SUBMIT
    if count >= exam_session.violation_warning_at:
        return ACTION_WARNING
    return ACTION_NONE


def _warning_message(action: str, remaining: int) -> Optional[str]:
    if action == ACTION_WARNING:
        return f"Warning: {remaining} more violation(s) will submit your exam automatically."
    if action == ACTION_AUTO_SUBMIT:
        return "Your exam has been submitted due to repeated violations."
    return None


async def _record_violation_locked(
    session: AsyncSession,
    exam_session: ExamSession,
    violation_type: ViolationType,
    detail: Optional[str] = None,
    ip_address: Optional[str] = None,
    context: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Append one violation to a live session and escalate.

    The caller holds the attempt lock and commits. A report against a session
    that is already terminal changes nothing.
    """
    if not exam_session.is_active:
        return {
            "recorded": False,
            "violation_count": exam_session.violation_count,
            "max_violations": exam_session.max_violations_allowed,
            "remaining_violations": 0,
            "action": ACTION_NONE,
            "warning_message": None,
            "terminated": True,
            "status": exam_session.status.value,
        }

    now = now or utcnow()
    violation_type = ViolationType(violation_type)
    violation = Violation(
        session_id=exam_session.id,
        exam_id=exam_session.exam_id,
        student_id=exam_session.student_id,
        type=violation_type,
        severity=SEVERITY.get(violation_type, "medium"),
        detail=detail,
        ip_address=ip_address,
        timestamp=now,
        context=context or {},
    )
    session.add(violation)
    await session.flush()

    count = await count_violations(session, exam_session.id)
    exam_session.violation_count = count
    action = _action_for(exam_session, count)
    violation.action_taken = action
    remaining = max(0, exam_session.max_violations_allowed - count)

    record_audit(
        session, "violation_recorded", "session", exam_session.id,
        {"type": violation_type.value, "detail": detail, "count": count, "action": action},
        ip_address,
    )
    logger.warning(
        "Violation %s on session %s (%d/%d) -> %s",
        violation_type.value, exam_session.id, count, exam_session.max_violations_allowed, action,
    )

    if action == ACTION_AUTO_SUBMIT:
        await finalize(
            session, exam_session, SubmissionTrigger.VIOLATION,
            ip_address=ip_address, details={"last_violation": violation_type.value}, now=now,
        )

    return {
        "recorded": True,
        "violation_id": str(violation.id),
        "violation_count": count,
        "max_violations": exam_session.max_violations_allowed,
        "remaining_violations": remaining,
        "action": action,
        "warning_message": _warning_message(action, remaining),
        "terminated": not exam_session.is_active,
        "status": exam_session.status.value,
    }


async def list_session_violations(session: AsyncSession, session_id) -> List[Violation]:
    res = await session.execute(
        select(Violation).where(Violation.session_id == session_id).order_by(Violation.timestamp, Violation.id)
    )
    return list(res.scalars().all())


async def violation_summary(session: AsyncSession, exam_session: ExamSession) -> Dict[str, Any]:
    violations = await list_session_violations(session, exam_session.id)
    by_type = Counter(v.type.value for v in violations)
    return {
        "session_id": str(exam_session.id),
        "total": len(violations),
        "max_violations": exam_session.max_violations_allowed,
        "by_type": dict(by_type),
        "violations": [violation_to_dict(v) for v in violations],
    }


async def list_exam_violations(session: AsyncSession, exam_id, student_id=None) -> List[Violation]:
    stmt = select(Violation).where(Violation.exam_id == exam_id)
    if student_id is not None:
        stmt = stmt.where(Violation.student_id == student_id)
    res = await session.execute(stmt.order_by(Violation.timestamp.desc()))
    return list(res.scalars().all())


def violation_to_dict(v: Violation) -> Dict[str, Any]:
    return {
        "id": str(v.id),
        "session_id": str(v.session_id),
        "student_id": str(v.student_id),
        "type": v.type.value,
        "severity": v.severity,
        "detail": v.detail,
        "ip_address": v.ip_address,
        "action_taken": v.action_taken,
        "timestamp": v.timestamp.isoformat(),
        "context": dict(v.context or {}),
    }
