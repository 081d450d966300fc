"""
Batch controller.

Large cohorts are cut into capacity-bounded batches run one after another.
Two rules hold regardless of how many workers serve requests:

- admission never overshoots ``max_capacity``: the increment is a single
  conditional UPDATE;
- at most one batch per exam is live: ``Exam.active_batch_id`` is claimed and
  released with compare-and-swap UPDATEs.

Once ``complete`` locks a batch the row is frozen (see ``batch_model``).
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.batch_model import ExamBatch, BatchStatus
from ..models.exam_model import Exam
from ..models.exam_session_model import ExamSession, ExamSessionStatus
from ..models.submission_model import Submission
from ..exceptions import BatchNotFound, BatchLocked, BatchConflict, BatchNotOpen, BatchFull, ProctorError
from .audit_service import record_audit
from .clock import utcnow, to_naive_utc
from .locks import attempt_locks
from .session_queries import get_exam, get_session_by_id, commit_attempt
from .submission_service import SubmissionTrigger, finalize

logger = logging.getLogger(__name__)

STATS_FIELDS = ("total_enrolled", "total_attempted", "total_submitted", "total_violations")


async def get_batch(session: AsyncSession, batch_id) -> ExamBatch:
    res = await session.execute(
        select(ExamBatch).where(ExamBatch.id == batch_id).execution_options(populate_existing=True)
    )
    batch = res.scalar_one_or_none()
    if batch is None:
        raise BatchNotFound()
    return batch


async def list_batches(session: AsyncSession, exam_id) -> List[ExamBatch]:
    res = await session.execute(
        select(ExamBatch)
        .where(ExamBatch.exam_id == exam_id)
        .order_by(ExamBatch.batch_number)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def get_active_batch(session: AsyncSession, exam_id) -> Optional[ExamBatch]:
    """The batch the exam-level pointer names, if it is still live."""
    exam = await get_exam(session, exam_id)
    if exam.active_batch_id is None:
        return None
    batch = await get_batch(session, exam.active_batch_id)
    if batch.status != BatchStatus.ACTIVE.value or batch.is_locked:
        return None
    return batch


async def get_next_pending_batch(session: AsyncSession, exam_id) -> Optional[ExamBatch]:
    res = await session.execute(
        select(ExamBatch)
        .where(
            ExamBatch.exam_id == exam_id,
            ExamBatch.status.in_([BatchStatus.PENDING.value, BatchStatus.QUEUED.value]),
            ExamBatch.is_locked == False,  # noqa: E712
        )
        .order_by(ExamBatch.batch_number)
        .limit(1)
    )
    return res.scalar_one_or_none()


async def add_student(session: AsyncSession, batch_id) -> bool:
    """
    Take one seat in ``batch_id``. Returns False, changing nothing, when the
    batch is locked, not active or full. Does not commit: the seat belongs to
    the transaction that creates the session.
    """
    res = await session.execute(
        update(ExamBatch)
        .where(
            ExamBatch.id == batch_id,
            ExamBatch.status == BatchStatus.ACTIVE.value,
            ExamBatch.is_locked == False,  # noqa: E712
            ExamBatch.current_count < ExamBatch.max_capacity,
        )
        .values(current_count=ExamBatch.current_count + 1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _find_student_batch(session: AsyncSession, exam_id, student_id) -> Optional[ExamBatch]:
    # roster is JSON, filtered here rather than in SQL to stay portable
    for batch in await list_batches(session, exam_id):
        if batch.has_student(student_id):
            return batch
    return None


async def admit_student(session: AsyncSession, exam: Exam, student_id) -> ExamBatch:
    """Seat ``student_id`` in the exam's live batch or raise why not."""
    if exam.active_batch_id is None:
        raise BatchNotOpen("No batch is currently running for this exam", reason="no_active_batch")

    batch = await get_batch(session, exam.active_batch_id)
    if batch.status != BatchStatus.ACTIVE.value or batch.is_locked:
        raise BatchNotOpen(reason="batch_not_active")

    if not batch.has_student(student_id):
        own = await _find_student_batch(session, exam.id, student_id)
        if own is None:
            raise BatchNotOpen("You are not enrolled in this examination", reason="not_in_any_batch")
        raise BatchNotOpen(
            f"Your batch ({own.batch_number}) is not active", reason="batch_not_active",
            batch_number=own.batch_number,
        )

    if not await add_student(session, batch.id):
        batch = await get_batch(session, batch.id)
        if batch.is_locked:
            raise BatchLocked()
        if batch.status != BatchStatus.ACTIVE.value:
            raise BatchNotOpen(reason="batch_not_active")
        raise BatchFull()
    return batch


async def generate_batches(
    session: AsyncSession,
    exam_id,
    student_ids: Sequence,
    batch_size: Optional[int] = None,
    start_time: Optional[datetime] = None,
    actor_id=None,
) -> List[ExamBatch]:
    """
    Replace the exam's batches with a fresh schedule: the roster is chunked by
    ``batch_size`` and each batch runs ``duration + buffer`` minutes starting
    where the previous one ends.
    """
    exam = await get_exam(session, exam_id)
    existing = await list_batches(session, exam.id)
    if any(b.is_locked for b in existing):
        raise BatchLocked("Batches of this exam are already locked")
    if any(b.status == BatchStatus.ACTIVE.value for b in existing) or exam.active_batch_id is not None:
        raise BatchConflict("A batch of this exam is running")

    students = [str(s) for s in student_ids]
    size = int(batch_size or exam.batch_size)
    if size <= 0:
        raise ProctorError("Batch size must be positive", reason="invalid_batch_size")

    await session.execute(delete(ExamBatch).where(ExamBatch.exam_id == exam.id))

    window = timedelta(minutes=exam.duration + (exam.batch_buffer_minutes or 0))
    current_start = to_naive_utc(start_time) or exam.start_time or utcnow()
    batches = []
    for number, offset in enumerate(range(0, len(students), size), start=1):
        roster = students[offset:offset + size]
        batch = ExamBatch(
            exam_id=exam.id,
            batch_number=number,
            students=roster,
            max_capacity=size,
            current_count=0,
            total_enrolled=len(roster),
            scheduled_start=current_start,
            scheduled_end=current_start + window,
            status=BatchStatus.PENDING.value,
        )
        session.add(batch)
        batches.append(batch)
        current_start = batch.scheduled_end

    exam.enable_batching = True
    exam.batch_size = size
    record_audit(
        session, "batches_generated", "exam", exam.id,
        {"total_batches": len(batches), "total_students": len(students), "batch_size": size},
        actor_id=actor_id,
    )
    await session.commit()
    logger.info("Generated %d batch(es) for exam %s (%d students)", len(batches), exam.id, len(students))
    return batches


async def start_batch(session: AsyncSession, batch_id, actor_id=None, now: Optional[datetime] = None) -> ExamBatch:
    batch = await get_batch(session, batch_id)
    if batch.is_locked:
        raise BatchLocked()

    exam = await get_exam(session, batch.exam_id)
    if exam.active_batch_id == batch.id and batch.status == BatchStatus.ACTIVE.value:
        return batch

    # claim the exam-level pointer; losing the race means another batch is live
    res = await session.execute(
        update(Exam)
        .where(Exam.id == batch.exam_id, Exam.active_batch_id.is_(None))
        .values(active_batch_id=batch.id)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise BatchConflict()

    now = now or utcnow()
    batch.status = BatchStatus.ACTIVE.value
    batch.actual_start = now
    record_audit(
        session, "batch_started", "batch", batch.id,
        {"batch_number": batch.batch_number,
         "scheduled_start": batch.scheduled_start.isoformat() if batch.scheduled_start else None},
        actor_id=actor_id,
    )
    await session.commit()
    logger.info("Batch %s of exam %s started", batch.batch_number, batch.exam_id)
    return batch


async def _live_session_ids(session: AsyncSession, exam_id, batch_number) -> List:
    res = await session.execute(
        select(ExamSession.id).where(
            ExamSession.exam_id == exam_id,
            ExamSession.batch_number == batch_number,
            ExamSession.status == ExamSessionStatus.ACTIVE,
        )
    )
    return list(res.scalars().all())


async def complete_batch(session: AsyncSession, batch_id, actor_id=None, now: Optional[datetime] = None) -> ExamBatch:
    """Force-submit the batch's live attempts, then lock it for good."""
    batch = await get_batch(session, batch_id)
    if batch.is_locked:
        raise BatchLocked()
    exam_id, batch_number = batch.exam_id, batch.batch_number

    for session_id in await _live_session_ids(session, exam_id, batch_number):
        exam_session = await get_session_by_id(session, session_id)
        async with attempt_locks.hold(exam_session.session_token):
            exam_session = await get_session_by_id(session, session_id)
            await finalize(session, exam_session, SubmissionTrigger.BATCH_COMPLETE, actor_id=actor_id, now=now)
            await commit_attempt(session)

    attempted = await session.execute(
        select(func.count(ExamSession.id)).where(
            ExamSession.exam_id == exam_id, ExamSession.batch_number == batch_number,
        )
    )
    submitted = await session.execute(
        select(func.count(Submission.id), func.coalesce(func.sum(Submission.total_violations), 0)).where(
            Submission.exam_id == exam_id, Submission.batch_number == batch_number,
        )
    )
    total_submitted, total_violations = submitted.one()

    now = now or utcnow()
    batch = await get_batch(session, batch_id)
    batch.total_attempted = int(attempted.scalar_one())
    batch.total_submitted = int(total_submitted)
    batch.total_violations = int(total_violations)
    batch.status = BatchStatus.COMPLETED.value
    batch.actual_end = now
    batch.is_locked = True
    batch.locked_at = now
    batch.locked_by = actor_id

    await session.execute(
        update(Exam)
        .where(Exam.id == exam_id, Exam.active_batch_id == batch.id)
        .values(active_batch_id=None)
        .execution_options(synchronize_session=False)
    )
    record_audit(
        session, "batch_completed_locked", "batch", batch.id,
        {"batch_number": batch_number, "total_submitted": batch.total_submitted,
         "total_violations": batch.total_violations},
        actor_id=actor_id,
    )
    await session.commit()
    logger.info("Batch %s of exam %s completed and locked", batch_number, exam_id)
    return batch


async def update_stats(session: AsyncSession, batch_id, **stats) -> ExamBatch:
    batch = await get_batch(session, batch_id)
    if batch.is_locked:
        raise BatchLocked("Cannot update locked batch")
    for key, value in stats.items():
        if key not in STATS_FIELDS:
            raise ProctorError(f"Unknown batch statistic: {key}", reason="invalid_statistic")
        setattr(batch, key, int(value))
    await session.commit()
    return batch


async def check_student_batch_status(
    session: AsyncSession, exam_id, student_id, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Whether ``student_id`` may start the exam right now, and if not, why."""
    now = now or utcnow()
    exam = await get_exam(session, exam_id)
    out: Dict[str, Any] = {"can_login": False, "server_time": now.isoformat()}

    if not exam.enable_batching:
        out.update(can_login=True, reason="Batching not enabled")
        return out

    batch = await _find_student_batch(session, exam.id, student_id)
    if batch is None:
        out["reason"] = "You are not enrolled in this examination"
        return out

    out.update(
        batch_number=batch.batch_number,
        batch_status=batch.status,
        scheduled_start=batch.scheduled_start.isoformat() if batch.scheduled_start else None,
        scheduled_end=batch.scheduled_end.isoformat() if batch.scheduled_end else None,
    )
    within_window = (
        (batch.scheduled_start is None or now >= batch.scheduled_start)
        and (batch.scheduled_end is None or now <= batch.scheduled_end)
    )
    if batch.is_locked:
        out["reason"] = "Your batch has ended and is locked"
    elif batch.status != BatchStatus.ACTIVE.value:
        out["reason"] = f"Your batch ({batch.batch_number}) has not started yet"
    elif not within_window:
        if batch.scheduled_start is not None and now < batch.scheduled_start:
            out["reason"] = "Your batch window has not opened yet"
        else:
            out["reason"] = "Your batch window has closed"
    elif batch.current_count >= batch.max_capacity:
        out["reason"] = "Batch capacity reached. Please wait."
    else:
        out.update(can_login=True, reason="Ready to start")
    return out


async def advance_batches(session: AsyncSession, now: Optional[datetime] = None, actor_id=None) -> Dict[str, list]:
    """
    Complete live batches whose schedule ended, then start the next pending
    batch of every exam whose slot opened.
    """
    now = now or utcnow()
    results: Dict[str, list] = {"started": [], "completed": [], "errors": []}

    res = await session.execute(
        select(ExamBatch.id).where(
            ExamBatch.status == BatchStatus.ACTIVE.value,
            ExamBatch.is_locked == False,  # noqa: E712
            ExamBatch.scheduled_end.is_not(None),
            ExamBatch.scheduled_end < now,
        )
    )
    for batch_id in res.scalars().all():
        try:
            await complete_batch(session, batch_id, actor_id=actor_id, now=now)
            results["completed"].append(str(batch_id))
        except ProctorError as e:
            await session.rollback()
            logger.warning("Could not complete batch %s: %s", batch_id, e.message)
            results["errors"].append({"batch_id": str(batch_id), "reason": e.reason})

    res = await session.execute(
        select(Exam.id).where(
            Exam.enable_batching == True,  # noqa: E712
            Exam.is_published == True,  # noqa: E712
            Exam.active_batch_id.is_(None),
        )
    )
    for exam_id in res.scalars().all():
        batch = await get_next_pending_batch(session, exam_id)
        if batch is None or batch.scheduled_start is None or batch.scheduled_start > now:
            continue
        batch_id = batch.id
        try:
            await start_batch(session, batch_id, actor_id=actor_id, now=now)
            results["started"].append(str(batch_id))
        except ProctorError as e:
            await session.rollback()
            logger.warning("Could not start batch %s: %s", batch_id, e.message)
            results["errors"].append({"batch_id": str(batch_id), "reason": e.reason})

    if results["started"] or results["completed"]:
        logger.info("Batch advance: %d started, %d completed", len(results["started"]), len(results["completed"]))
    return results


def batch_to_dict(batch: ExamBatch) -> Dict[str, Any]:
    return {
        "id": str(batch.id),
        "exam_id": str(batch.exam_id),
        "batch_number": batch.batch_number,
        "status": batch.status,
        "max_capacity": batch.max_capacity,
        "current_count": batch.current_count,
        "student_count": len(batch.students or []),
        "scheduled_start": batch.scheduled_start,
        "scheduled_end": batch.scheduled_end,
        "actual_start": batch.actual_start,
        "actual_end": batch.actual_end,
        "total_enrolled": batch.total_enrolled,
        "total_attempted": batch.total_attempted,
        "total_submitted": batch.total_submitted,
        "total_violations": batch.total_violations,
        "is_locked": batch.is_locked,
        "locked_at": batch.locked_at,
    }
