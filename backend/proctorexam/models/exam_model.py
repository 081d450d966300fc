from proctorexam.db import Base
from sqlalchemy import String


"""
Exams Model and ExamQuestions Junction Table
| Column | Type | Notes |
| :--- | :--- | :--- |
| `id` | UUID | Primary Key |
| `title` | VARCHAR | |
| `start_time` | TIMESTAMP | naive UTC, window opens |
| `end_time` | TIMESTAMP | naive UTC, window closes |
| `duration` | INTEGER | In minutes |
| `is_published` | BOOLEAN | Default `false` |
| `max_attempts` | INTEGER | completed attempts allowed per student |
| `enable_proctoring` | BOOLEAN | client violation reports are counted |
| `max_violations_before_warning` | INTEGER | warning tier |
| `max_violations_before_submit` | INTEGER | termination tier, copied onto each session |
| `negative_marking` | BOOLEAN | when false negative scores are clamped to 0 |
| `binding_mode` | VARCHAR | standard / strict / lenient session binding |
| `enable_batching` | BOOLEAN | admission gated by the active batch |
| `batch_size` | INTEGER | |
| `batch_buffer_minutes` | INTEGER | gap between staggered batches |
| `active_batch_id` | UUID | exam-level pointer to the single live batch |

### ExamQuestions (Junction)
| Column | Type | Notes |
| :--- | :--- | :--- |
| `exam_id` | UUID | FK -> Exams |
| `question_id` | UUID | FK -> Questions |
| `order` | INTEGER | To maintain sequence in exam |
"""

from sqlalchemy import Column, Boolean, Integer, DateTime, ForeignKey, Table, Uuid
import uuid

from proctorexam import config


# Association (junction) table between exams and questions
exam_questions = Table(
    "exam_questions",
    Base.metadata,
    Column("exam_id", Uuid, ForeignKey("exams.id", ondelete="CASCADE"), primary_key=True),
    Column("question_id", Uuid, ForeignKey("questions.id"), primary_key=True),
    Column("order", Integer, nullable=False),
)


class Exam(Base):
    __tablename__ = "exams"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=False)  # in minutes
    is_published = Column(Boolean, default=False)
    max_attempts = Column(Integer, nullable=False, default=1)

    # proctoring
    enable_proctoring = Column(Boolean, nullable=False, default=True)
    max_violations_before_warning = Column(Integer, nullable=False, default=config.MAX_VIOLATIONS_WARNING)
    max_violations_before_submit = Column(Integer, nullable=False, default=config.MAX_VIOLATIONS_SUBMIT)
    binding_mode = Column(String, nullable=False, default="standard")

    # scoring
    negative_marking = Column(Boolean, nullable=False, default=True)

    # batching
    enable_batching = Column(Boolean, nullable=False, default=False)
    batch_size = Column(Integer, nullable=False, default=config.DEFAULT_BATCH_SIZE)
    batch_buffer_minutes = Column(Integer, nullable=False, default=config.DEFAULT_BATCH_BUFFER_MINUTES)
    # no FK: batches reference exams, this is only swapped with a conditional UPDATE
    active_batch_id = Column(Uuid, nullable=True)
