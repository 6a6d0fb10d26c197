from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from skillstrainer.core.errors import BadRequestError, ConflictError
from skillstrainer.models.attempt import Answer, Question, QuestionType, QuizAttempt, QuizStatus
from skillstrainer.models.study_session import StudySession
from skillstrainer.schemas.quiz import AnswerIn
from skillstrainer.services import quiz_attempts, structured_output
from skillstrainer.services.streaming import StreamChannel


log = logging.getLogger(__name__)

GRADING_MESSAGE = "Grading your answers..."
GRADING_FAILED_MESSAGE = "Grading failed. Please try again."
GRADING_INCOMPLETE_MESSAGE = "Some answers could not be graded. Please try regrading."
GRADING_TIMEOUT_MESSAGE = "Grading timed out. Please try again."


@dataclass(frozen=True)
class GradingQuestion:
    id: uuid.UUID
    question_number: int
    question_type: QuestionType
    question_text: str
    correct_answer: str


@dataclass(frozen=True)
class GradingAnswer:
    id: uuid.UUID
    question_id: uuid.UUID
    user_answer: str


@dataclass(frozen=True)
class GradingContext:
    """Everything the grading pass needs, detached from the request session."""

    quiz_attempt_id: uuid.UUID
    session_subject: str
    questions: tuple[GradingQuestion, ...]
    answers: tuple[GradingAnswer, ...]


def grade_mcq(user_answer: str | None, correct_answer: str) -> bool:
    return (user_answer or "").strip().lower() == (correct_answer or "").strip().lower()


def _build_context(db: Session, attempt: QuizAttempt) -> GradingContext:
    subject = db.scalar(select(StudySession.subject).where(StudySession.id == attempt.session_id)) or ""
    questions = db.scalars(
        select(Question).where(Question.quiz_attempt_id == attempt.id).order_by(Question.question_number.asc())
    ).all()
    answers = db.scalars(select(Answer).where(Answer.quiz_attempt_id == attempt.id)).all()
    return GradingContext(
        quiz_attempt_id=attempt.id,
        session_subject=subject,
        questions=tuple(
            GradingQuestion(
                id=q.id,
                question_number=int(q.question_number),
                question_type=q.question_type,
                question_text=q.question_text,
                correct_answer=q.correct_answer,
            )
            for q in questions
        ),
        answers=tuple(
            GradingAnswer(id=a.id, question_id=a.question_id, user_answer=a.user_answer or "") for a in answers
        ),
    )


def _claim_for_grading(db: Session, attempt_id: uuid.UUID, from_status: QuizStatus) -> bool:
    # Compare-and-set so only one concurrent submit or regrade wins the attempt.
    result = db.execute(
        update(QuizAttempt)
        .where(QuizAttempt.id == attempt_id)
        .where(QuizAttempt.status == from_status)
        .values(status=QuizStatus.grading, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def prepare_grading(
    db: Session,
    attempt_id: uuid.UUID,
    user_id: uuid.UUID,
    final_answers: list[AnswerIn] | None = None,
) -> GradingContext:
    attempt = quiz_attempts.load_owned_attempt(db, attempt_id, user_id)

    if attempt.status in (QuizStatus.completed, QuizStatus.grading):
        raise ConflictError("quiz has already been submitted")
    if attempt.status != QuizStatus.in_progress:
        raise BadRequestError("quiz is not in progress")

    if final_answers:
        quiz_attempts.apply_answers(db, attempt.id, final_answers)
        db.commit()

    question_ids = set(db.scalars(select(Question.id).where(Question.quiz_attempt_id == attempt.id)).all())
    answered = {
        a.question_id
        for a in db.scalars(select(Answer).where(Answer.quiz_attempt_id == attempt.id)).all()
        if (a.user_answer or "").strip()
    }
    if not question_ids or question_ids - answered:
        raise BadRequestError("all questions must be answered before submitting")

    if not _claim_for_grading(db, attempt.id, QuizStatus.in_progress):
        db.rollback()
        raise ConflictError("quiz has already been submitted")
    db.commit()
    return _build_context(db, attempt)


def prepare_regrade(db: Session, attempt_id: uuid.UUID, user_id: uuid.UUID) -> GradingContext:
    attempt = quiz_attempts.load_owned_attempt(db, attempt_id, user_id)
    if attempt.status != QuizStatus.submitted_ungraded:
        raise ConflictError("only quizzes that failed grading can be regraded")

    if not _claim_for_grading(db, attempt.id, QuizStatus.submitted_ungraded):
        db.rollback()
        raise ConflictError("quiz is already being regraded")
    for a in db.scalars(select(Answer).where(Answer.quiz_attempt_id == attempt.id)).all():
        a.score = None
        a.is_correct = None
        a.feedback = None
        a.graded_at = None
    db.commit()
    return _build_context(db, attempt)


def _persist_grade(db: Session, answer_id: uuid.UUID, *, score: float, feedback: str | None) -> None:
    answer = db.get(Answer, answer_id)
    if answer is None:
        raise RuntimeError(f"answer disappeared during grading answer_id={answer_id}")
    answer.score = score
    answer.is_correct = score == 1.0
    answer.feedback = feedback
    answer.graded_at = datetime.utcnow()
    db.commit()


def _finalize(db: Session, context: GradingContext, channel: StreamChannel) -> None:
    db.expire_all()
    attempt = db.get(QuizAttempt, context.quiz_attempt_id)
    if attempt is None:
        raise RuntimeError(f"quiz attempt disappeared during grading attempt_id={context.quiz_attempt_id}")

    scores = db.scalars(select(Answer.score).where(Answer.quiz_attempt_id == attempt.id)).all()
    count = len(context.questions)
    if count == 0 or len(scores) < count or any(s is None for s in scores):
        attempt.status = QuizStatus.submitted_ungraded
        db.commit()
        log.warning(
            "grading incomplete attempt_id=%s graded=%s total=%s",
            attempt.id,
            sum(s is not None for s in scores),
            count,
        )
        channel.error(GRADING_INCOMPLETE_MESSAGE)
        return

    final_score = round(100.0 * sum(float(s) for s in scores) / count, 2)
    attempt.score = final_score
    attempt.status = QuizStatus.completed
    attempt.completed_at = datetime.utcnow()
    db.commit()

    channel.complete({"quizAttemptId": str(attempt.id), "score": final_score})


def _mark_ungraded(db: Session, attempt_id: uuid.UUID) -> None:
    try:
        attempt = db.get(QuizAttempt, attempt_id)
        if attempt is not None and attempt.status != QuizStatus.completed:
            attempt.status = QuizStatus.submitted_ungraded
            db.commit()
    except Exception:
        log.exception("failed to mark quiz ungraded attempt_id=%s", attempt_id)
        db.rollback()


def execute_grading(db: Session, context: GradingContext, channel: StreamChannel) -> None:
    try:
        channel.progress(GRADING_MESSAGE)

        answers_by_question = {a.question_id: a for a in context.answers}
        free_text: dict[int, tuple[GradingQuestion, GradingAnswer]] = {}

        for q in sorted(context.questions, key=lambda x: x.question_number):
            a = answers_by_question.get(q.id)
            if a is None:
                continue
            if q.question_type == QuestionType.mcq:
                is_correct = grade_mcq(a.user_answer, q.correct_answer)
                score = 1.0 if is_correct else 0.0
                _persist_grade(db, a.id, score=score, feedback=None)
                channel.graded(
                    {"questionNumber": q.question_number, "score": score, "isCorrect": is_correct, "feedback": None}
                )
            else:
                free_text[q.question_number] = (q, a)

        if free_text:
            seen: set[int] = set()

            def _on_graded(result) -> None:
                pair = free_text.get(int(result.questionNumber))
                if pair is None or result.questionNumber in seen:
                    log.warning(
                        "ignoring graded result attempt_id=%s question_number=%s",
                        context.quiz_attempt_id,
                        result.questionNumber,
                    )
                    return
                seen.add(result.questionNumber)
                _, a = pair
                _persist_grade(db, a.id, score=float(result.score), feedback=result.feedback)
                channel.graded(
                    {
                        "questionNumber": int(result.questionNumber),
                        "score": float(result.score),
                        "isCorrect": bool(result.isCorrect),
                        "feedback": result.feedback,
                    }
                )

            # One model call for every free-text answer in the quiz.
            structured_output.grade_answers(
                structured_output.GradeAnswersParams(
                    subject=context.session_subject,
                    answers=[
                        structured_output.FreeTextAnswer(
                            question_number=q.question_number,
                            question_text=q.question_text,
                            correct_answer=q.correct_answer,
                            user_answer=a.user_answer,
                        )
                        for q, a in free_text.values()
                    ],
                ),
                on_graded=_on_graded,
            )

        _finalize(db, context, channel)
    except Exception:
        log.exception("quiz grading failed attempt_id=%s", context.quiz_attempt_id)
        db.rollback()
        _mark_ungraded(db, context.quiz_attempt_id)
        channel.error(GRADING_FAILED_MESSAGE)
