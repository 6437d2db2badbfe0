"""Typed errors carrying a learner-facing message."""
from __future__ import annotations


class TutorError(Exception):
    """Base error. ``message`` is safe to show to the learner."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class GenerationError(TutorError):
    status_code = 502


class QuizError(GenerationError):
    pass


class PlaybackError(TutorError):
    status_code = 502


class SubjectExistsError(TutorError):
    status_code = 409


class SubjectNotFoundError(TutorError):
    status_code = 404


class TurnInProgressError(TutorError):
    status_code = 409


class EmptyMessageError(TutorError):
    pass


class NotSignedInError(TutorError):
    status_code = 401
