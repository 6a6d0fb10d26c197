from skillstrainer.models.user import User
from skillstrainer.models.study_session import Material, MaterialStatus, StudySession
from skillstrainer.models.attempt import (
    Answer,
    AnswerFormat,
    Question,
    QuestionType,
    QuizAttempt,
    QuizDifficulty,
    QuizStatus,
)

__all__ = [
    "User",
    "StudySession",
    "Material",
    "MaterialStatus",
    "QuizAttempt",
    "Question",
    "Answer",
    "QuizStatus",
    "QuizDifficulty",
    "AnswerFormat",
    "QuestionType",
]
