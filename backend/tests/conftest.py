import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from proctorexam.db import create_db_and_tables
from proctorexam.models.batch_model import ExamBatch, BatchStatus
from proctorexam.models.exam_model import Exam, exam_questions
from proctorexam.models.question_model import QuestionDB, QuestionType
from proctorexam.services.clock import utcnow


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_db_and_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
def student_id():
    return uuid.uuid4()


async def make_question(session, type=QuestionType.SINGLE_CHOICE, marks=1, negative_marks=0, **answer_key):
    if type in (QuestionType.SINGLE_CHOICE, QuestionType.MULTI_CHOICE) and "options" not in answer_key:
        answer_key["options"] = [{"id": o, "text": o.upper()} for o in ("a", "b", "c", "d")]
        answer_key.setdefault("correct_answers", ["a"])
    q = QuestionDB(title=f"{type.value} question", type=type, marks=marks, negative_marks=negative_marks, **answer_key)
    session.add(q)
    await session.flush()
    return q


async def make_exam(session, questions=(), **kwargs):
    values = dict(title="Physics midterm", duration=60, is_published=True)
    values.update(kwargs)
    exam = Exam(**values)
    session.add(exam)
    await session.flush()
    for order, q in enumerate(questions):
        await session.execute(insert(exam_questions).values(exam_id=exam.id, question_id=q.id, order=order))
    await session.commit()
    return exam


async def make_batch(session, exam, batch_number=1, students=(), max_capacity=2, status=BatchStatus.PENDING, **kwargs):
    now = utcnow()
    batch = ExamBatch(
        exam_id=exam.id,
        batch_number=batch_number,
        students=[str(s) for s in students],
        max_capacity=max_capacity,
        total_enrolled=len(students),
        scheduled_start=kwargs.pop("scheduled_start", now - timedelta(minutes=5)),
        scheduled_end=kwargs.pop("scheduled_end", now + timedelta(minutes=75)),
        status=status.value,
        **kwargs,
    )
    session.add(batch)
    await session.commit()
    return batch


@pytest.fixture
def factories():
    class Factories:
        question = staticmethod(make_question)
        exam = staticmethod(make_exam)
        batch = staticmethod(make_batch)
    return Factories
