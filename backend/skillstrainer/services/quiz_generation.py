from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillstrainer.core.config import settings
from skillstrainer.core.errors import ConflictError, NotFoundError, assert_ownership
from skillstrainer.models.attempt import (
    Answer,
    AnswerFormat,
    Question,
    QuestionType,
    QuizAttempt,
    QuizDifficulty,
    QuizStatus,
)
from skillstrainer.services import structured_output, study_sessions
from skillstrainer.services.streaming import StreamChannel


log = logging.getLogger(__name__)

ANALYZING_MESSAGE = "Analyzing materials..."
GENERATION_FAILED_MESSAGE = "Generation failed. Please try again."
GENERATION_TIMEOUT_MESSAGE = "Generation timed out. Please try again."


@dataclass(frozen=True)
class PreparedGeneration:
    session_id: uuid.UUID
    user_id: uuid.UUID
    subject: str
    goal: str
    materials_text: str
    materials_used: bool


@dataclass(frozen=True)
class GenerationParams:
    prepared: PreparedGeneration
    difficulty: QuizDifficulty
    answer_format: AnswerFormat
    question_count: int


def prepare_generation(db: Session, session_id: uuid.UUID, user_id: uuid.UUID) -> PreparedGeneration:
    owner = study_sessions.get_session_owner(db, session_id)
    if owner is None:
        raise NotFoundError("session not found")
    assert_ownership(owner.owner_id, user_id)

    # Query-then-insert guard: two clicks racing past this check is accepted.
    in_flight = db.scalar(
        select(QuizAttempt.id)
        .where(QuizAttempt.session_id == session_id)
        .where(QuizAttempt.status == QuizStatus.generating)
        .limit(1)
    )
    if in_flight is not None:
        raise ConflictError("a quiz is already being generated for this session")

    texts = study_sessions.list_ready_material_texts(db, session_id)
    materials_text = "\n\n".join(texts)
    max_chars = int(settings.quiz_materials_max_chars)
    if max_chars > 0 and len(materials_text) > max_chars:
        log.warning("materials truncated session_id=%s chars=%s max=%s", session_id, len(materials_text), max_chars)
        materials_text = materials_text[:max_chars]

    return PreparedGeneration(
        session_id=session_id,
        user_id=user_id,
        subject=owner.subject,
        goal=owner.goal,
        materials_text=materials_text,
        materials_used=bool(materials_text),
    )


def question_event_data(q: Question) -> dict:
    # Canonical answer, explanation and tags stay server-side until results.
    return {
        "id": str(q.id),
        "questionNumber": int(q.question_number),
        "questionType": q.question_type.value,
        "questionText": q.question_text,
        "options": list(q.options) if q.options is not None else None,
    }


def execute_generation(db: Session, params: GenerationParams, channel: StreamChannel) -> None:
    prepared = params.prepared
    requested = int(params.question_count)
    attempt_id: uuid.UUID | None = None

    try:
        attempt = QuizAttempt(
            session_id=prepared.session_id,
            user_id=prepared.user_id,
            difficulty=params.difficulty,
            answer_format=params.answer_format,
            question_count=requested,
            materials_used=prepared.materials_used,
            status=QuizStatus.generating,
        )
        db.add(attempt)
        db.commit()
        attempt_id = attempt.id

        channel.progress(ANALYZING_MESSAGE)

        produced = 0

        def _on_question(item) -> None:
            nonlocal produced
            number = produced + 1
            q = Question(
                quiz_attempt_id=attempt_id,
                question_number=number,
                question_type=QuestionType(item.questionType),
                question_text=item.questionText,
                options=list(item.options) if item.options is not None else None,
                correct_answer=item.correctAnswer,
                explanation=item.explanation,
                difficulty=QuizDifficulty(item.difficulty),
                tags=list(item.tags or []),
            )
            db.add(q)
            db.flush()
            db.add(Answer(question_id=q.id, quiz_attempt_id=attempt_id))
            db.commit()
            produced = number

            channel.item(question_event_data(q))
            channel.progress(f"Generating question {number}/{requested}...")

        structured_output.generate_questions(
            structured_output.GenerateQuizParams(
                subject=prepared.subject,
                goal=prepared.goal,
                difficulty=params.difficulty.value,
                answer_format=params.answer_format.value,
                question_count=requested,
                materials_text=prepared.materials_text or None,
            ),
            on_question=_on_question,
        )

        # Runs even after the deadline so the persisted questions stay usable.
        attempt.status = QuizStatus.in_progress
        attempt.question_count = produced
        attempt.started_at = datetime.utcnow()
        db.commit()

        if produced < requested:
            log.info("partial generation attempt_id=%s produced=%s requested=%s", attempt_id, produced, requested)

        channel.complete({"quizAttemptId": str(attempt_id)})
    except Exception:
        log.exception(
            "quiz generation failed session_id=%s attempt_id=%s", prepared.session_id, attempt_id
        )
        db.rollback()
        channel.error(GENERATION_FAILED_MESSAGE)
        if attempt_id is not None:
            log.info("quiz attempt left in generating status attempt_id=%s", attempt_id)
