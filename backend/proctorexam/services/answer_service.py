import logging
import random
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.exam_session_model import ExamSession, SessionAnswer
from ..models.question_model import QuestionDB, QuestionType
from ..exceptions import QuestionNotInExam
from .clock import utcnow
from .scoring_service import is_blank
from .session_queries import _get_exam_qids

logger = logging.getLogger(__name__)

NOT_VISITED = "not_visited"
NOT_ANSWERED = "not_answered"
ANSWERED = "answered"
MARKED = "marked"
ANSWERED_MARKED = "answered_marked"

# fields a client may send with an autosave; anything left out is kept as is
AUTOSAVE_FIELDS = ("response", "marked_for_review", "visited", "time_taken")


async def _get_answer(session: AsyncSession, session_id, question_id) -> Optional[SessionAnswer]:
    res = await session.execute(
        select(SessionAnswer).where(
            SessionAnswer.session_id == session_id,
            SessionAnswer.question_id == question_id,
        )
    )
    return res.scalar_one_or_none()


async def _save_answer_locked(
    session: AsyncSession,
    exam_session: ExamSession,
    question_id,
    changes: Dict[str, Any],
    now: Optional[datetime] = None,
) -> SessionAnswer:
    """
    Partial upsert of one answer. Only keys present in ``changes`` are applied.
    Caller holds the attempt lock, has checked the session is live, and commits.
    """
    qids = {str(q) for q in await _get_exam_qids(session, exam_session.exam_id)}
    if str(question_id) not in qids:
        raise QuestionNotInExam()

    now = now or utcnow()
    answer = await _get_answer(session, exam_session.id, question_id)
    if answer is None:
        answer = SessionAnswer(
            session_id=exam_session.id,
            question_id=question_id,
            visited=True,
            marked_for_review=False,
            time_taken=0,
            marks_obtained=0.0,
        )
        session.add(answer)

    if "response" in changes:
        response = changes["response"]
        answer.response = response
        # stamped when something is stored, cleared when the answer is emptied
        answer.answered_at = None if is_blank(response) else now
        answer.visited = True
    if changes.get("marked_for_review") is not None:
        answer.marked_for_review = bool(changes["marked_for_review"])
    if changes.get("visited") is not None:
        answer.visited = bool(changes["visited"])
    if changes.get("time_taken") is not None:
        answer.time_taken = max(0, int(changes["time_taken"]))

    exam_session.autosave_count = (exam_session.autosave_count or 0) + 1
    exam_session.last_autosave_at = now
    exam_session.last_activity_at = now
    await session.flush()
    return answer


def palette_state(answer: Optional[SessionAnswer]) -> str:
    if answer is None or not answer.visited:
        return NOT_VISITED
    answered = not is_blank(answer.response)
    if answer.marked_for_review:
        return ANSWERED_MARKED if answered else MARKED
    return ANSWERED if answered else NOT_ANSWERED


def question_palette(questions: List[QuestionDB], answers: List[SessionAnswer]) -> List[Dict[str, Any]]:
    by_qid = {str(a.question_id): a for a in answers}
    out = []
    for number, q in enumerate(questions, start=1):
        out.append({"number": number, "question_id": str(q.id), "state": palette_state(by_qid.get(str(q.id)))})
    return out


def answer_to_dict(answer: SessionAnswer) -> Dict[str, Any]:
    return {
        "question_id": str(answer.question_id),
        "response": answer.response,
        "visited": answer.visited,
        "marked_for_review": answer.marked_for_review,
        "answered_at": answer.answered_at.isoformat() if answer.answered_at else None,
        "time_taken": answer.time_taken,
    }


def _sanitize_question(q: QuestionDB, rng: Optional[random.Random] = None) -> Dict[str, Any]:
    # student view, nothing that reveals the answer key
    rng = rng or random.Random()
    qtype = q.type if isinstance(q.type, QuestionType) else QuestionType(q.type)
    out: Dict[str, Any] = {
        "id": str(q.id),
        "title": q.title,
        "description": q.description,
        "type": qtype.value,
        "marks": q.marks,
        "negative_marks": q.negative_marks,
    }

    if qtype in (QuestionType.SINGLE_CHOICE, QuestionType.MULTI_CHOICE, QuestionType.TRUE_FALSE):
        out["options"] = [
            {k: v for k, v in opt.items() if k != "is_correct"} if isinstance(opt, dict) else opt
            for opt in (q.options or [])
        ]
    elif qtype == QuestionType.FILL_BLANK:
        out["blank_count"] = len(q.blanks or []) or 1
    elif qtype == QuestionType.MATCHING:
        pairs = q.match_pairs or []
        right = [p.get("right") for p in pairs]
        rng.shuffle(right)
        out["left_items"] = [p.get("left") for p in pairs]
        out["right_items"] = right
    elif qtype == QuestionType.ORDERING:
        items = list(q.correct_order or [])
        rng.shuffle(items)
        out["items"] = items
    elif qtype == QuestionType.HOTSPOT:
        out["has_hotspots"] = bool(q.hotspots)
    return out
