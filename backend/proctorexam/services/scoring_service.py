"""
Per-question scoring.

``score_answer(question, answer)`` returns the marks for one answer, or the
``PENDING_MANUAL_GRADE`` sentinel for types a human grades. Scorers are
registered per question type with ``@scorer(...)`` so a new type only adds a
function. Nothing here raises: a malformed answer scores 0 so one bad answer
cannot abort grading of the rest of a submission.
"""
import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..models.question_model import QuestionType

logger = logging.getLogger(__name__)

# partial-mode multi choice deduction per wrong selection
MULTI_CHOICE_WRONG_PENALTY = 0.25


class PendingManualGrade:
    """Sentinel result: the answer needs a human grader. Not the same as 0."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "PENDING_MANUAL_GRADE"


PENDING_MANUAL_GRADE = PendingManualGrade()

ScoreResult = Union[float, PendingManualGrade]
Scorer = Callable[[Any, Any], ScoreResult]

_SCORERS: Dict[str, Scorer] = {}


def scorer(*question_types: QuestionType):
    def register(fn: Scorer) -> Scorer:
        for qt in question_types:
            _SCORERS[QuestionType(qt).value] = fn
        return fn
    return register


def is_pending(result) -> bool:
    return result is PENDING_MANUAL_GRADE


def is_blank(answer: Any) -> bool:
    """
    True for "no answer at all": None, whitespace strings, empty dicts, and
    lists whose every item is itself blank (``["", None]`` is an untouched
    fill-blank).
    """
    if answer is None:
        return True
    if isinstance(answer, str):
        return answer.strip() == ""
    if isinstance(answer, dict):
        return len(answer) == 0
    if isinstance(answer, (list, tuple, set)):
        return all(is_blank(item) for item in answer)
    return False


def _type_key(question) -> str:
    qtype = getattr(question, "type", None)
    return qtype.value if isinstance(qtype, QuestionType) else str(qtype)


def _marks(question) -> float:
    return float(getattr(question, "marks", 0) or 0)


def _penalty(question) -> float:
    return -float(getattr(question, "negative_marks", 0) or 0)


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _correct_option_ids(question) -> set:
    """Correct option ids from ``correct_answers``, falling back to flags on ``options``."""
    ids = {str(v) for v in _as_list(getattr(question, "correct_answers", None))}
    if not ids:
        for opt in getattr(question, "options", None) or []:
            if isinstance(opt, dict) and opt.get("is_correct"):
                ids.add(str(opt.get("id")))
    return ids


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text_matches(value, accepted: Iterable, case_sensitive: bool = False) -> bool:
    given = str(value if value is not None else "").strip()
    for candidate in accepted:
        expected = str(candidate).strip()
        if case_sensitive:
            if given == expected:
                return True
        elif given.lower() == expected.lower():
            return True
    return False


@scorer(QuestionType.SINGLE_CHOICE, QuestionType.TRUE_FALSE)
def _score_single_choice(question, answer) -> float:
    selected = {str(v) for v in _as_list(answer)}
    if len(selected) == 1 and selected <= _correct_option_ids(question):
        return _marks(question)
    return _penalty(question)


@scorer(QuestionType.MULTI_CHOICE)
def _score_multi_choice(question, answer) -> float:
    correct_ids = _correct_option_ids(question)
    if not correct_ids:
        return 0.0
    selected = {str(v) for v in _as_list(answer)}
    correct = len(selected & correct_ids)
    incorrect = len(selected - correct_ids)
    fraction = correct / len(correct_ids)

    if getattr(question, "partial_marking", False):
        if incorrect:
            return max(0.0, (fraction - incorrect * MULTI_CHOICE_WRONG_PENALTY) * _marks(question))
        return fraction * _marks(question)

    if incorrect:
        return _penalty(question)
    return _marks(question) if correct == len(correct_ids) else 0.0


@scorer(QuestionType.NUMERICAL)
def _score_numerical(question, answer) -> float:
    given = _to_number(answer)
    expected = _to_number(getattr(question, "correct_answers", None))
    if given is None or expected is None:
        return 0.0
    tolerance = abs(float(getattr(question, "tolerance", 0) or 0))
    # boundary inclusive
    if abs(given - expected) <= tolerance:
        return _marks(question)
    return _penalty(question)


@scorer(QuestionType.FILL_BLANK)
def _score_fill_blank(question, answer) -> float:
    blanks = getattr(question, "blanks", None) or []
    if not blanks:
        # single blank checked against the accepted list, case-insensitive
        given = answer[0] if isinstance(answer, (list, tuple)) and answer else answer
        accepted = _as_list(getattr(question, "correct_answers", None))
        return _marks(question) if _text_matches(given, accepted) else _penalty(question)

    given_list = _as_list(answer)
    correct_blanks = 0
    for index, blank in enumerate(blanks):
        given = given_list[index] if index < len(given_list) else ""
        if _text_matches(given, blank.get("accepted_answers") or [], bool(blank.get("case_sensitive", False))):
            correct_blanks += 1

    if getattr(question, "partial_marking", False):
        return correct_blanks / len(blanks) * _marks(question)
    return _marks(question) if correct_blanks == len(blanks) else _penalty(question)


@scorer(QuestionType.SHORT_ANSWER)
def _score_short_answer(question, answer) -> float:
    # no negative marks for short answers
    accepted = _as_list(getattr(question, "correct_answers", None))
    return _marks(question) if _text_matches(answer, accepted) else 0.0


def _positional(question, answer: List, expected: List) -> float:
    if not isinstance(answer, (list, tuple)) or not expected:
        return 0.0
    hits = sum(1 for i, item in enumerate(expected) if i < len(answer) and answer[i] == item)
    if hits == len(expected) and len(answer) == len(expected):
        return _marks(question)
    if getattr(question, "partial_marking", False):
        return hits / len(expected) * _marks(question)
    return 0.0


@scorer(QuestionType.MATCHING)
def _score_matching(question, answer) -> float:
    pairs = getattr(question, "match_pairs", None) or []
    return _positional(question, answer, [p.get("right") for p in pairs])


@scorer(QuestionType.ORDERING)
def _score_ordering(question, answer) -> float:
    return _positional(question, answer, list(getattr(question, "correct_order", None) or []))


@scorer(QuestionType.HOTSPOT)
def _score_hotspot(question, answer) -> float:
    regions = getattr(question, "hotspots", None) or []
    if not regions:
        return 0.0
    if isinstance(answer, dict):
        x, y = _to_number(answer.get("x")), _to_number(answer.get("y"))
    elif isinstance(answer, (list, tuple)) and len(answer) == 2:
        x, y = _to_number(answer[0]), _to_number(answer[1])
    else:
        return 0.0
    if x is None or y is None:
        return 0.0

    for spot in regions:
        if not spot.get("is_correct"):
            continue
        left, top = float(spot["x"]), float(spot["y"])
        if left <= x <= left + float(spot["width"]) and top <= y <= top + float(spot["height"]):
            return _marks(question)
    return _penalty(question)


@scorer(QuestionType.LONG_ANSWER, QuestionType.CODE)
def _score_manual(question, answer) -> PendingManualGrade:
    return PENDING_MANUAL_GRADE


def score_answer(question, answer, allow_negative: bool = True) -> ScoreResult:
    """
    Marks for ``answer`` to ``question``.

    - blank answer -> 0 for every type, never a penalty
    - long_answer / code -> ``PENDING_MANUAL_GRADE``
    - unknown type or malformed answer -> 0
    - ``allow_negative=False`` clamps penalties to 0 (exam without negative marking)
    """
    if is_blank(answer):
        return 0.0

    fn = _SCORERS.get(_type_key(question))
    if fn is None:
        logger.warning("No scorer for question type %r (question %s)", _type_key(question), getattr(question, "id", None))
        return 0.0

    try:
        result = fn(question, answer)
    except Exception as e:
        logger.warning("Malformed answer for question %s scored as 0: %s", getattr(question, "id", None), e)
        return 0.0

    if is_pending(result):
        return result
    result = float(result)
    if not allow_negative and result < 0:
        return 0.0
    return result


def grade_submission(answers: Dict[str, Any], questions: List[Any], allow_negative: bool = True):
    """
    Grade the given answers against the provided questions.
    - answers: mapping question_id (str or uuid) -> answer value
    - questions: list of question objects (id, type, marks, answer-key columns)

    Returns (question_scores: dict, total_score: float)
    Questions pending manual grading get ``None`` and are not counted.
    """
    question_scores: Dict[str, Optional[float]] = {}
    total = 0.0

    for q in questions:
        qid_str = str(q.id)
        result = score_answer(q, answers.get(qid_str), allow_negative=allow_negative)
        if is_pending(result):
            question_scores[qid_str] = None
            continue
        question_scores[qid_str] = result
        total += result

    return question_scores, total
