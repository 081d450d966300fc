"""
Domain errors raised by the services. Each carries a machine readable
``reason`` that the UI uses to message the student, and the HTTP status the
routers answer with.
"""
from fastapi import status


class ProctorError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    reason = "error"
    message = "Request could not be processed"

    def __init__(self, message: str | None = None, reason: str | None = None, **extra):
        self.message = message or self.message
        if reason is not None:
            self.reason = reason
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        out = {"detail": self.message, "reason": self.reason}
        out.update(self.extra)
        return out


class SessionNotFound(ProctorError):
    status_code = status.HTTP_404_NOT_FOUND
    reason = "session_not_found"
    message = "Session not found"


class SessionExpired(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "session_expired"
    message = "Exam time is over"


class SessionTerminated(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "session_terminated"
    message = "Session is no longer active"


class DeviceMismatch(ProctorError):
    # message is deliberately generic, the reason code is what the client gets
    status_code = status.HTTP_403_FORBIDDEN
    reason = "browser_mismatch"
    message = "Session could not be verified"


class ExamNotFound(ProctorError):
    status_code = status.HTTP_404_NOT_FOUND
    reason = "exam_not_found"
    message = "Exam not found"


class ExamNotAvailable(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "exam_not_active"
    message = "Exam not available"


class ExamWindowClosed(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "exam_ended"
    message = "Exam window is closed"


class AttemptsExhausted(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "attempts_exhausted"
    message = "You have already submitted this exam"


class BatchNotOpen(ProctorError):
    status_code = status.HTTP_403_FORBIDDEN
    reason = "no_active_batch"
    message = "Your batch is not open"


class BatchNotFound(ProctorError):
    status_code = status.HTTP_404_NOT_FOUND
    reason = "batch_not_found"
    message = "Batch not found"


class BatchFull(ProctorError):
    status_code = status.HTTP_409_CONFLICT
    reason = "batch_full"
    message = "Batch capacity reached. Please wait."


class BatchLocked(ProctorError):
    status_code = status.HTTP_409_CONFLICT
    reason = "batch_locked"
    message = "Batch is locked and cannot be modified"


class BatchConflict(ProctorError):
    status_code = status.HTTP_409_CONFLICT
    reason = "batch_conflict"
    message = "Another batch is already active for this exam"


class QuestionNotInExam(ProctorError):
    status_code = status.HTTP_400_BAD_REQUEST
    reason = "question_not_in_exam"
    message = "Question does not belong to this exam"


class ConcurrentModification(ProctorError):
    status_code = status.HTTP_409_CONFLICT
    reason = "concurrent_modification"
    message = "Session was modified concurrently, retry the request"


class SubmissionNotFound(ProctorError):
    status_code = status.HTTP_404_NOT_FOUND
    reason = "submission_not_found"
    message = "No submission for this session yet"
