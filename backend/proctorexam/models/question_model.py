from proctorexam.db import Base, json_type
import enum
import uuid
from sqlalchemy import Column, Integer, String, Float, Boolean, Enum, Uuid


class QuestionType(str, enum.Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    TRUE_FALSE = "true_false"
    NUMERICAL = "numerical"
    FILL_BLANK = "fill_blank"
    SHORT_ANSWER = "short_answer"
    MATCHING = "matching"
    ORDERING = "ordering"
    HOTSPOT = "hotspot"
    LONG_ANSWER = "long_answer"
    CODE = "code"


class QuestionDB(Base):
    """
    Read-only from the engine's point of view; authored elsewhere.

    Answer-key columns by type:
    - choice types: ``options`` [{"id", "text", "is_correct"}] and/or
      ``correct_answers`` (list of option ids)
    - numerical: ``correct_answers`` (number) and ``tolerance``
    - fill_blank: ``blanks`` [{"accepted_answers": [...], "case_sensitive": bool}],
      or ``correct_answers`` (accepted strings) for a single blank
    - short_answer: ``correct_answers`` (accepted strings)
    - matching: ``match_pairs`` [{"left", "right"}]
    - ordering: ``correct_order`` [...]
    - hotspot: ``hotspots`` [{"x", "y", "width", "height", "is_correct"}]
    """
    __tablename__ = "questions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)

    type = Column(Enum(QuestionType, name="question_type", values_callable=lambda e: [m.value for m in e]),
                  nullable=False)
    options = Column(json_type(), nullable=True)
    correct_answers = Column(json_type(), nullable=True)
    tolerance = Column(Float, nullable=False, default=0)
    blanks = Column(json_type(), nullable=True)
    match_pairs = Column(json_type(), nullable=True)
    correct_order = Column(json_type(), nullable=True)
    hotspots = Column(json_type(), nullable=True)

    marks = Column(Float, nullable=False, default=1)
    negative_marks = Column(Float, nullable=False, default=0)
    partial_marking = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    tags = Column(json_type(), nullable=True)
