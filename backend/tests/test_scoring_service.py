import pytest
import uuid
from proctorexam.services.scoring_service import (
    grade_submission, score_answer, is_pending, PENDING_MANUAL_GRADE,
)


class DummyQuestion:
    def __init__(self, id, type, marks=1, negative_marks=0, partial_marking=False, **answer_key):
        self.id = id
        self.type = type
        self.marks = marks
        self.negative_marks = negative_marks
        self.partial_marking = partial_marking
        for k, v in answer_key.items():
            setattr(self, k, v)


def test_single_choice_correct_wrong_and_blank():
    q = DummyQuestion(id=1, type="single_choice", correct_answers=["A"], marks=2, negative_marks=0.5)

    assert score_answer(q, "A") == 2.0
    assert score_answer(q, ["A"]) == 2.0
    assert score_answer(q, "B") == -0.5
    # more than one selection is never a single-choice answer
    assert score_answer(q, ["A", "B"]) == -0.5

    # missing answer
    assert score_answer(q, None) == 0.0
    assert score_answer(q, "") == 0.0
    assert score_answer(q, []) == 0.0


def test_single_choice_falls_back_to_option_flags():
    q = DummyQuestion(
        id=1, type="true_false",
        options=[{"id": "t", "text": "True", "is_correct": True}, {"id": "f", "text": "False"}],
    )
    assert score_answer(q, "t") == 1.0
    assert score_answer(q, "f") == 0.0


def test_multi_choice_strict_any_wrong_selection_is_penalty():
    q = DummyQuestion(id="abc", type="multi_choice", correct_answers=["A", "C"], marks=3, negative_marks=1)

    # exact match, order irrelevant
    assert score_answer(q, ["A", "C"]) == 3.0
    assert score_answer(q, ["C", "A"]) == 3.0
    # incomplete but nothing wrong
    assert score_answer(q, ["A"]) == 0.0
    # an extraneous wrong option never leaves a positive partial score
    assert score_answer(q, ["A", "C", "B"]) == -1.0
    assert score_answer(q, ["B"]) == -1.0


def test_multi_choice_partial_mode():
    q = DummyQuestion(
        id="m", type="multi_choice", correct_answers=["a", "b"], marks=4, negative_marks=1, partial_marking=True,
    )
    assert score_answer(q, ["a"]) == 2.0
    assert score_answer(q, ["a", "b"]) == 4.0
    # (1/2 - 1 * 0.25) * 4
    assert score_answer(q, ["a", "c"]) == pytest.approx(1.0)
    # never below zero in partial mode
    assert score_answer(q, ["c", "d", "e"]) == 0.0


def test_numerical_tolerance_is_inclusive():
    q = DummyQuestion(id="n", type="numerical", correct_answers=10, tolerance=0.5, marks=2, negative_marks=1)

    assert score_answer(q, 10) == 2.0
    assert score_answer(q, "10.5") == 2.0
    assert score_answer(q, 9.5) == 2.0
    assert score_answer(q, 10.6) == -1.0
    # not a number: no penalty
    assert score_answer(q, "ten") == 0.0
    assert score_answer(q, True) == 0.0


def test_fill_blank_per_blank_case_sensitivity_and_partial():
    blanks = [
        {"accepted_answers": ["Paris"], "case_sensitive": True},
        {"accepted_answers": ["seine", "la seine"]},
    ]
    strict = DummyQuestion(id="f", type="fill_blank", blanks=blanks, marks=2, negative_marks=0.5)
    partial = DummyQuestion(id="f2", type="fill_blank", blanks=blanks, marks=2, partial_marking=True)

    assert score_answer(strict, ["Paris", "SEINE"]) == 2.0
    assert score_answer(strict, ["paris", "seine"]) == -0.5
    assert score_answer(partial, ["paris", " La Seine "]) == 1.0


def test_fill_blank_single_accepted_list():
    q = DummyQuestion(id="f", type="fill_blank", correct_answers=["H2O", "water"])
    assert score_answer(q, "Water") == 1.0
    assert score_answer(q, ["h2o"]) == 1.0


def test_short_answer_has_no_negative_marks():
    q = DummyQuestion(id="s", type="short_answer", correct_answers=["Newton"], marks=2, negative_marks=1)
    assert score_answer(q, "newton") == 2.0
    assert score_answer(q, "Einstein") == 0.0


def test_matching_and_ordering_positional():
    pairs = [{"left": "1", "right": "one"}, {"left": "2", "right": "two"}, {"left": "3", "right": "three"}]
    matching = DummyQuestion(id="mt", type="matching", match_pairs=pairs, marks=3)
    ordering = DummyQuestion(id="o", type="ordering", correct_order=["a", "b", "c", "d"], marks=4, partial_marking=True)

    assert score_answer(matching, ["one", "two", "three"]) == 3.0
    assert score_answer(matching, ["one", "three", "two"]) == 0.0
    assert score_answer(ordering, ["a", "b", "d", "c"]) == 2.0
    assert score_answer(ordering, ["a", "b", "c", "d"]) == 4.0


def test_hotspot_inside_correct_region():
    q = DummyQuestion(
        id="h", type="hotspot", marks=2, negative_marks=1,
        hotspots=[
            {"x": 0, "y": 0, "width": 10, "height": 10, "is_correct": False},
            {"x": 20, "y": 20, "width": 10, "height": 10, "is_correct": True},
        ],
    )
    assert score_answer(q, {"x": 25, "y": 25}) == 2.0
    assert score_answer(q, [30, 30]) == 2.0
    assert score_answer(q, {"x": 5, "y": 5}) == -1.0
    assert score_answer(q, {"x": "a", "y": 1}) == 0.0


def test_long_answer_and_code_are_pending():
    for qtype in ("long_answer", "code"):
        q = DummyQuestion(id=qtype, type=qtype, marks=5)
        result = score_answer(q, "def f(): pass")
        assert result is PENDING_MANUAL_GRADE
        assert is_pending(result)
        assert result != 0


def test_negative_marks_clamped_when_disabled():
    q = DummyQuestion(id=1, type="single_choice", correct_answers=["A"], negative_marks=1)
    assert score_answer(q, "B", allow_negative=False) == 0.0


def test_unknown_type_and_malformed_answer_score_zero():
    unknown = DummyQuestion(id=1, type="essay_v2", correct_answers=["x"])
    broken = DummyQuestion(id=2, type="hotspot", hotspots=[{"x": 0, "is_correct": True}])
    assert score_answer(unknown, "x") == 0.0
    assert score_answer(broken, {"x": 1, "y": 1}) == 0.0


def test_unattempted_never_penalised():
    questions = [
        DummyQuestion(id="a", type="single_choice", correct_answers=["A"], negative_marks=2),
        DummyQuestion(id="b", type="multi_choice", correct_answers=["A"], negative_marks=2),
        DummyQuestion(id="c", type="numerical", correct_answers=1, negative_marks=2),
    ]
    qscores, total = grade_submission({}, questions)
    assert qscores == {"a": 0.0, "b": 0.0, "c": 0.0}
    assert total == 0.0


def test_pending_question_is_none_and_not_counted():
    q1 = DummyQuestion(id=uuid.uuid4(), type="long_answer", marks=5)
    q2 = DummyQuestion(id=2, type="single_choice", correct_answers=[1], marks=2)

    # only q2 auto-graded
    answers = {str(q2.id): 1, str(q1.id): "Some text"}
    qscores, total = grade_submission(answers, [q1, q2])

    assert qscores[str(q1.id)] is None
    assert qscores[str(q2.id)] == 2.0
    assert total == 2.0


def test_answers_made_of_empty_items_are_blank():
    fill = DummyQuestion(
        id="f", type="fill_blank", negative_marks=1,
        blanks=[{"accepted_answers": ["x"]}, {"accepted_answers": ["y"]}],
    )
    multi = DummyQuestion(id="m", type="multi_choice", correct_answers=["a"], negative_marks=1)
    single = DummyQuestion(id="s", type="single_choice", correct_answers=["a"], negative_marks=1)

    assert score_answer(fill, ["", ""]) == 0.0
    assert score_answer(fill, [" ", None]) == 0.0
    assert score_answer(multi, [None]) == 0.0
    assert score_answer(single, [""]) == 0.0

    scores, total = grade_submission({"f": ["", ""], "m": [None]}, [fill, multi])
    assert scores == {"f": 0.0, "m": 0.0}
    assert total == 0.0
