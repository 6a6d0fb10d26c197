from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillstrainer.core.errors import BadRequestError, ConflictError, NotFoundError, assert_ownership
from skillstrainer.core.sanitize import sanitize_string
from skillstrainer.models.attempt import Answer, Question, QuizAttempt, QuizStatus
from skillstrainer.schemas.quiz import AnswerIn


def load_owned_attempt(db: Session, attempt_id: uuid.UUID, user_id: uuid.UUID) -> QuizAttempt:
    attempt = db.scalar(select(QuizAttempt).where(QuizAttempt.id == attempt_id))
    if attempt is None:
        raise NotFoundError("quiz not found")
    assert_ownership(attempt.user_id, user_id)
    return attempt


def _questions(db: Session, attempt_id: uuid.UUID) -> list[Question]:
    return list(
        db.scalars(
            select(Question).where(Question.quiz_attempt_id == attempt_id).order_by(Question.question_number.asc())
        ).all()
    )


def _answers(db: Session, attempt_id: uuid.UUID) -> list[Answer]:
    return list(db.scalars(select(Answer).where(Answer.quiz_attempt_id == attempt_id)).all())


def _question_public(q: Question) -> dict:
    return {
        "id": str(q.id),
        "questionNumber": int(q.question_number),
        "questionType": q.question_type.value,
        "questionText": q.question_text,
        "options": list(q.options) if q.options is not None else None,
    }


def _answer_public(a: Answer) -> dict:
    return {
        "id": str(a.id),
        "questionId": str(a.question_id),
        "userAnswer": a.user_answer,
        "answeredAt": a.answered_at,
    }


def apply_answers(db: Session, attempt_id: uuid.UUID, answers: list[AnswerIn]) -> int:
    """Write answers for questions that belong to the attempt; others are skipped.

    Does not commit.
    """

    latest: dict[uuid.UUID, str] = {}
    for item in answers:
        try:
            qid = uuid.UUID(str(item.questionId))
        except ValueError:
            continue
        latest[qid] = sanitize_string(item.answer)

    if not latest:
        return 0

    known = {q.id for q in _questions(db, attempt_id)}
    by_question = {a.question_id: a for a in _answers(db, attempt_id)}
    now = datetime.utcnow()

    saved = 0
    for qid, text in latest.items():
        if qid not in known:
            continue
        row = by_question.get(qid)
        if row is None:
            row = Answer(question_id=qid, quiz_attempt_id=attempt_id)
            db.add(row)
        row.user_answer = text
        row.answered_at = now
        saved += 1
    db.flush()
    return saved


def get_quiz(db: Session, attempt_id: uuid.UUID, user_id: uuid.UUID) -> dict:
    attempt = load_owned_attempt(db, attempt_id, user_id)
    return {
        "id": str(attempt.id),
        "sessionId": str(attempt.session_id),
        "difficulty": attempt.difficulty.value,
        "answerFormat": attempt.answer_format.value,
        "questionCount": int(attempt.question_count),
        "materialsUsed": bool(attempt.materials_used),
        "status": attempt.status.value,
        "startedAt": attempt.started_at,
        "createdAt": attempt.created_at,
        "questions": [_question_public(q) for q in _questions(db, attempt.id)],
        "answers": [_answer_public(a) for a in _answers(db, attempt.id)],
    }


def save_answers(db: Session, attempt_id: uuid.UUID, user_id: uuid.UUID, answers: list[AnswerIn]) -> dict:
    attempt = load_owned_attempt(db, attempt_id, user_id)
    if attempt.status != QuizStatus.in_progress:
        raise ConflictError("answers can only be saved while the quiz is in progress")

    saved = apply_answers(db, attempt.id, answers)
    db.commit()
    return {"saved": saved}


def get_results(db: Session, attempt_id: uuid.UUID, user_id: uuid.UUID) -> dict:
    attempt = load_owned_attempt(db, attempt_id, user_id)
    if attempt.status != QuizStatus.completed:
        raise BadRequestError("results are only available for completed quizzes")

    questions = _questions(db, attempt.id)
    answers = _answers(db, attempt.id)

    correct = sum(1 for a in answers if a.score == 1.0)
    partial = sum(1 for a in answers if a.score == 0.5)
    incorrect = sum(1 for a in answers if a.score == 0.0)

    return {
        "id": str(attempt.id),
        "sessionId": str(attempt.session_id),
        "difficulty": attempt.difficulty.value,
        "answerFormat": attempt.answer_format.value,
        "questionCount": int(attempt.question_count),
        "score": attempt.score,
        "status": attempt.status.value,
        "startedAt": attempt.started_at,
        "completedAt": attempt.completed_at,
        "questions": [
            {
                **_question_public(q),
                "correctAnswer": q.correct_answer,
                "explanation": q.explanation,
                "tags": list(q.tags or []),
            }
            for q in questions
        ],
        "answers": [
            {
                **_answer_public(a),
                "score": a.score,
                "isCorrect": a.is_correct,
                "feedback": a.feedback,
            }
            for a in answers
        ],
        "summary": {"correct": correct, "partial": partial, "incorrect": incorrect, "total": len(questions)},
    }
