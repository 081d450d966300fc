import uuid
from datetime import timedelta, timezone

import pytest

from proctorexam.exceptions import BatchConflict, BatchFull, BatchLocked, BatchNotOpen
from proctorexam.models.batch_model import BatchStatus
from proctorexam.models.exam_session_model import ExamSessionStatus
from proctorexam.services import batch_service, session_service
from proctorexam.services.clock import utcnow
from proctorexam.services.audit_service import get_audit_trail
from proctorexam.services.session_queries import get_exam, get_session_by_token

IP = "203.0.113.7"
FP = "fp-original"


@pytest.mark.asyncio
async def test_capacity_two_admits_exactly_two(session, factories):
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam, max_capacity=2, status=BatchStatus.ACTIVE)

    assert await batch_service.add_student(session, batch.id) is True
    assert await batch_service.add_student(session, batch.id) is True
    assert await batch_service.add_student(session, batch.id) is False
    await session.commit()

    batch = await batch_service.get_batch(session, batch.id)
    assert batch.current_count == 2


@pytest.mark.asyncio
async def test_add_student_refuses_pending_batch(session, factories):
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam)
    assert await batch_service.add_student(session, batch.id) is False


@pytest.mark.asyncio
async def test_only_one_batch_live_per_exam(session, factories):
    exam = await factories.exam(session, enable_batching=True)
    first = await factories.batch(session, exam, batch_number=1)
    second = await factories.batch(session, exam, batch_number=2)

    started = await batch_service.start_batch(session, first.id)
    assert started.status == "active"
    with pytest.raises(BatchConflict):
        await batch_service.start_batch(session, second.id)
    # the losing call leaves the caller's objects usable
    assert second.status == "pending"

    assert (await get_exam(session, exam.id)).active_batch_id == first.id
    assert (await batch_service.get_active_batch(session, exam.id)).id == first.id
    assert (await batch_service.get_next_pending_batch(session, exam.id)).id == second.id


@pytest.mark.asyncio
async def test_session_admission_through_active_batch(session, factories):
    inside, late, outsider = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    waiting = uuid.uuid4()
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam, students=[inside, late], max_capacity=1)
    await factories.batch(session, exam, batch_number=2, students=[waiting])

    with pytest.raises(BatchNotOpen) as exc:
        await session_service.create_session(session, exam.id, inside, IP, FP)
    assert exc.value.reason == "no_active_batch"

    await batch_service.start_batch(session, batch.id)
    view = await session_service.create_session(session, exam.id, inside, IP, FP)
    assert view["batch_number"] == 1

    with pytest.raises(BatchFull):
        await session_service.create_session(session, exam.id, late, IP, FP)
    with pytest.raises(BatchNotOpen) as exc:
        await session_service.create_session(session, exam.id, outsider, IP, FP)
    assert exc.value.reason == "not_in_any_batch"
    with pytest.raises(BatchNotOpen) as exc:
        await session_service.create_session(session, exam.id, waiting, IP, FP)
    assert exc.value.reason == "batch_not_active"

    assert (await batch_service.get_batch(session, batch.id)).current_count == 1


@pytest.mark.asyncio
async def test_complete_force_submits_and_locks(session, factories):
    student = uuid.uuid4()
    admin_id = uuid.uuid4()
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam, students=[student])
    await batch_service.start_batch(session, batch.id, actor_id=admin_id)
    view = await session_service.create_session(session, exam.id, student, IP, FP)

    done = await batch_service.complete_batch(session, batch.id, actor_id=admin_id)

    assert done.status == "completed"
    assert done.is_locked is True
    assert done.locked_by == admin_id
    assert done.total_attempted == 1
    assert done.total_submitted == 1
    exam_session = await get_session_by_token(session, view["session_token"])
    assert exam_session.status == ExamSessionStatus.FORCE_SUBMITTED
    assert (await get_exam(session, exam.id)).active_batch_id is None

    with pytest.raises(BatchLocked):
        await batch_service.start_batch(session, batch.id)
    with pytest.raises(BatchLocked):
        await batch_service.complete_batch(session, batch.id)
    with pytest.raises(BatchLocked):
        await batch_service.update_stats(session, batch.id, total_violations=9)


@pytest.mark.asyncio
async def test_locked_batch_rejects_direct_writes(session, factories):
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam)
    await batch_service.start_batch(session, batch.id)
    await batch_service.complete_batch(session, batch.id)

    batch = await batch_service.get_batch(session, batch.id)
    batch.max_capacity = 999
    with pytest.raises(BatchLocked):
        await session.flush()
    await session.rollback()


@pytest.mark.asyncio
async def test_submission_updates_batch_stats(session, factories):
    student = uuid.uuid4()
    exam = await factories.exam(session, enable_batching=True, max_violations_before_submit=10)
    batch = await factories.batch(session, exam, students=[student])
    await batch_service.start_batch(session, batch.id)
    view = await session_service.create_session(session, exam.id, student, IP, FP)
    await session_service.report_violation(session, view["session_token"], "tab_switch")
    await session_service.submit(session, view["session_token"], IP, FP)

    batch = await batch_service.get_batch(session, batch.id)
    assert batch.total_submitted == 1
    assert batch.total_violations == 1


@pytest.mark.asyncio
async def test_generate_batches_schedules_back_to_back(session, factories):
    start = utcnow().replace(microsecond=0)
    exam = await factories.exam(session, duration=60, batch_buffer_minutes=15)
    students = [uuid.uuid4() for _ in range(5)]

    batches = await batch_service.generate_batches(session, exam.id, students, batch_size=2, start_time=start)

    assert [b.batch_number for b in batches] == [1, 2, 3]
    assert [b.total_enrolled for b in batches] == [2, 2, 1]
    assert batches[0].scheduled_start == start
    assert batches[0].scheduled_end == start + timedelta(minutes=75)
    assert batches[1].scheduled_start == batches[0].scheduled_end
    assert (await get_exam(session, exam.id)).enable_batching is True

    # regenerating replaces the pending schedule
    again = await batch_service.generate_batches(session, exam.id, students, batch_size=5, start_time=start)
    assert len(again) == 1
    assert len(await batch_service.list_batches(session, exam.id)) == 1

    await batch_service.start_batch(session, again[0].id)
    with pytest.raises(BatchConflict):
        await batch_service.generate_batches(session, exam.id, students, batch_size=2)


@pytest.mark.asyncio
async def test_check_student_batch_status(session, factories):
    mine, other = uuid.uuid4(), uuid.uuid4()
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam, students=[mine])

    status = await batch_service.check_student_batch_status(session, exam.id, mine)
    assert status["can_login"] is False
    assert status["batch_number"] == 1

    await batch_service.start_batch(session, batch.id)
    status = await batch_service.check_student_batch_status(session, exam.id, mine)
    assert status["can_login"] is True

    status = await batch_service.check_student_batch_status(session, exam.id, other)
    assert status["can_login"] is False
    assert "not enrolled" in status["reason"]


@pytest.mark.asyncio
async def test_advance_completes_overdue_and_starts_next(session, factories):
    now = utcnow()
    exam = await factories.exam(session, enable_batching=True)
    first = await factories.batch(
        session, exam, batch_number=1,
        scheduled_start=now - timedelta(hours=2), scheduled_end=now - timedelta(minutes=1),
    )
    second = await factories.batch(
        session, exam, batch_number=2,
        scheduled_start=now - timedelta(minutes=1), scheduled_end=now + timedelta(hours=1),
    )
    await batch_service.start_batch(session, first.id)

    result = await batch_service.advance_batches(session, now=now)

    assert result["completed"] == [str(first.id)]
    assert result["started"] == [str(second.id)]
    assert result["errors"] == []
    assert (await get_exam(session, exam.id)).active_batch_id == second.id


@pytest.mark.asyncio
async def test_advance_records_a_lost_start_and_carries_on(session, factories, monkeypatch):
    now = utcnow()
    exam = await factories.exam(session, enable_batching=True)
    batch = await factories.batch(session, exam, scheduled_start=now - timedelta(minutes=1))
    batch_id = batch.id

    async def lose_the_race(*args, **kwargs):
        raise BatchConflict()

    monkeypatch.setattr(batch_service, "start_batch", lose_the_race)

    result = await batch_service.advance_batches(session, now=now)

    assert result["started"] == []
    assert result["errors"] == [{"batch_id": str(batch_id), "reason": "batch_conflict"}]
    assert (await batch_service.get_batch(session, batch_id)).status == "pending"


@pytest.mark.asyncio
async def test_json_list_and_dict_columns_track_independently(session, factories):
    exam = await factories.exam(session)
    students = [uuid.uuid4(), uuid.uuid4()]

    batches = await batch_service.generate_batches(session, exam.id, students, batch_size=5)

    batch = await batch_service.get_batch(session, batches[0].id)
    assert batch.students == [str(s) for s in students]
    batch.students.append(str(uuid.uuid4()))
    await session.commit()
    assert len((await batch_service.get_batch(session, batch.id)).students) == 3

    trail = await get_audit_trail(session, "exam", exam.id)
    assert trail[-1].details == {"total_batches": 1, "total_students": 2, "batch_size": 5}


@pytest.mark.asyncio
async def test_generate_batches_stores_aware_start_as_naive_utc(session, factories):
    exam = await factories.exam(session, duration=60, batch_buffer_minutes=0)
    local = utcnow().replace(microsecond=0, tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=2)))

    batches = await batch_service.generate_batches(session, exam.id, [uuid.uuid4()], batch_size=1, start_time=local)

    assert batches[0].scheduled_start.tzinfo is None
    assert batches[0].scheduled_start == local.astimezone(timezone.utc).replace(tzinfo=None)
