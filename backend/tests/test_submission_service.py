import uuid

import pytest
from sqlalchemy import select

from proctorexam.models.exam_session_model import ExamSessionStatus, SessionAnswer
from proctorexam.models.question_model import QuestionType
from proctorexam.services import session_service
from proctorexam.services.audit_service import get_audit_trail
from proctorexam.services.session_queries import get_session_by_token
from proctorexam.services.submission_service import admin_finalize, list_submissions

IP = "203.0.113.7"
FP = "fp-original"


async def attempt(session, exam):
    view = await session_service.create_session(session, exam.id, uuid.uuid4(), IP, FP)
    return view["session_token"]


async def answer(session, token, question, response):
    await session_service.save_answer(session, token, question.id, {"response": response}, IP, FP)


@pytest.mark.asyncio
async def test_finalize_scores_and_is_idempotent(session, factories):
    right = await factories.question(session, marks=2)
    wrong = await factories.question(session, marks=2, negative_marks=1)
    skipped = await factories.question(session, marks=1, negative_marks=1)
    exam = await factories.exam(session, questions=[right, wrong, skipped])
    token = await attempt(session, exam)
    await answer(session, token, right, "a")
    await answer(session, token, wrong, "c")

    first = await session_service.submit(session, token, IP, FP)
    second = await session_service.submit(session, token, IP, FP)

    assert first == second
    assert first["status"] == "submitted"
    assert first["submission_type"] == "manual"
    assert first["total_marks"] == 5.0
    assert first["marks_obtained"] == 1.0
    assert first["percentage"] == 20.0
    assert first["questions_attempted"] == 2
    assert first["correct_answers"] == 1
    assert first["wrong_answers"] == 1
    assert first["unattempted"] == 1

    exam_session = await get_session_by_token(session, token)
    trail = await get_audit_trail(session, "session", exam_session.id)
    assert [e.action for e in trail].count("submitted") == 1

    rows = await session.execute(select(SessionAnswer).where(SessionAnswer.session_id == exam_session.id))
    by_question = {a.question_id: a for a in rows.scalars().all()}
    assert by_question[right.id].is_correct is True
    assert by_question[wrong.id].marks_obtained == -1.0


@pytest.mark.asyncio
async def test_pending_manual_grade_is_neither_right_nor_wrong(session, factories):
    essay = await factories.question(session, type=QuestionType.LONG_ANSWER, marks=10)
    mcq = await factories.question(session, marks=2)
    exam = await factories.exam(session, questions=[essay, mcq])
    token = await attempt(session, exam)
    await answer(session, token, essay, "A long essay")
    await answer(session, token, mcq, "a")

    summary = await session_service.submit(session, token, IP, FP)

    assert summary["pending_manual_grade"] == 1
    assert summary["correct_answers"] == 1
    assert summary["wrong_answers"] == 0
    assert summary["questions_attempted"] == 2
    assert summary["marks_obtained"] == 2.0
    assert summary["total_marks"] == 12.0
    essay_entry = next(e for e in summary["answers"] if e["question_id"] == str(essay.id))
    assert essay_entry["marks_obtained"] is None
    assert essay_entry["pending_manual_grade"] is True


@pytest.mark.asyncio
async def test_unattempted_contributes_nothing_with_negative_marking(session, factories):
    q = await factories.question(session, marks=4, negative_marks=2)
    exam = await factories.exam(session, questions=[q], negative_marking=True)
    token = await attempt(session, exam)

    summary = await session_service.submit(session, token, IP, FP)

    assert summary["marks_obtained"] == 0.0
    assert summary["unattempted"] == 1
    assert summary["wrong_answers"] == 0


@pytest.mark.asyncio
async def test_negative_marking_switch_clamps_penalties(session, factories):
    q = await factories.question(session, marks=4, negative_marks=2)
    exam = await factories.exam(session, questions=[q], negative_marking=False)
    token = await attempt(session, exam)
    await answer(session, token, q, "b")

    summary = await session_service.submit(session, token, IP, FP)

    assert summary["marks_obtained"] == 0.0
    assert summary["wrong_answers"] == 1


@pytest.mark.asyncio
async def test_exam_without_questions_has_zero_percentage(session, factories):
    exam = await factories.exam(session)
    token = await attempt(session, exam)
    summary = await session_service.submit(session, token, IP, FP)
    assert summary["total_marks"] == 0
    assert summary["percentage"] == 0.0


@pytest.mark.asyncio
async def test_admin_terminate_and_force_submit(session, factories):
    exam = await factories.exam(session)
    admin_id = uuid.uuid4()
    token_a = await attempt(session, exam)
    token_b = await attempt(session, exam)
    a = await get_session_by_token(session, token_a)
    b = await get_session_by_token(session, token_b)

    forced = await admin_finalize(session, a.id, admin_id)
    terminated = await admin_finalize(session, b.id, admin_id, terminate=True, reason="Impersonation")

    assert forced["status"] == "force_submitted"
    assert forced["submission_type"] == "admin-force"
    assert terminated["status"] == "violation_terminated"
    assert terminated["termination_reason"] == "Impersonation"

    b = await get_session_by_token(session, token_b)
    assert b.status == ExamSessionStatus.VIOLATION_TERMINATED
    trail = await get_audit_trail(session, "session", b.id)
    assert trail[-1].action == "terminated_by_admin"
    assert trail[-1].actor_id == admin_id

    # the student's late submit returns the sealed snapshot
    late = await session_service.submit(session, token_b, IP, FP)
    assert late == terminated

    assert len(await list_submissions(session, exam_id=exam.id)) == 2
