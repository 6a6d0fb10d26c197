from __future__ import annotations

import uuid
from typing import Iterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from skillstrainer.core.config import settings
from skillstrainer.core.rate_limit import rate_limit
from skillstrainer.core.security import get_current_user
from skillstrainer.db import session as db_session
from skillstrainer.db.session import get_db
from skillstrainer.models.attempt import AnswerFormat, QuizDifficulty
from skillstrainer.models.user import User
from skillstrainer.schemas.quiz import (
    QuizResponse,
    QuizResultsResponse,
    SaveAnswersRequest,
    SaveAnswersResponse,
    SubmitRequest,
)
from skillstrainer.services import quiz_attempts, quiz_generation, quiz_grading
from skillstrainer.services.streaming import StreamChannel, run_streaming

router = APIRouter(prefix="/quizzes", tags=["quizzes"])
session_router = APIRouter(prefix="/sessions", tags=["quizzes"])


def _sse_response(frames: Iterator[str]) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _stream_grading(context: quiz_grading.GradingContext) -> StreamingResponse:
    def _work(channel: StreamChannel) -> None:
        with db_session.open_session() as worker_db:
            quiz_grading.execute_grading(worker_db, context, channel)

    frames = run_streaming(
        _work,
        timeout_seconds=float(settings.quiz_stream_timeout_seconds),
        timeout_message=quiz_grading.GRADING_TIMEOUT_MESSAGE,
        name=f"quiz-grade-{context.quiz_attempt_id}",
    )
    return _sse_response(frames)


@session_router.get("/{session_id}/quizzes/generate")
def generate_quiz(
    session_id: uuid.UUID,
    difficulty: QuizDifficulty = Query(...),
    format: AnswerFormat = Query(...),
    count: int = Query(..., ge=settings.quiz_min_question_count, le=settings.quiz_max_question_count),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    _rl=rate_limit(
        key_prefix="quiz_generate",
        limit=int(settings.rate_limit_generation_per_hour),
        window_seconds=60 * 60,
        per_path=False,
    ),
):
    # Precondition failures surface as plain JSON errors; nothing is streamed yet.
    prepared = quiz_generation.prepare_generation(db, session_id, user.id)
    params = quiz_generation.GenerationParams(
        prepared=prepared,
        difficulty=difficulty,
        answer_format=format,
        question_count=int(count),
    )
    db.close()

    def _work(channel: StreamChannel) -> None:
        with db_session.open_session() as worker_db:
            quiz_generation.execute_generation(worker_db, params, channel)

    frames = run_streaming(
        _work,
        timeout_seconds=float(settings.quiz_stream_timeout_seconds),
        timeout_message=quiz_generation.GENERATION_TIMEOUT_MESSAGE,
        name=f"quiz-generate-{session_id}",
    )
    return _sse_response(frames)


@router.get("/{quiz_id}", response_model=QuizResponse)
def get_quiz(
    quiz_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return quiz_attempts.get_quiz(db, quiz_id, user.id)


@router.patch("/{quiz_id}/answers", response_model=SaveAnswersResponse)
def save_answers(
    quiz_id: uuid.UUID,
    payload: SaveAnswersRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return quiz_attempts.save_answers(db, quiz_id, user.id, payload.answers)


@router.post("/{quiz_id}/submit")
def submit_quiz(
    quiz_id: uuid.UUID,
    payload: SubmitRequest | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    final_answers = payload.answers if payload is not None else []
    context = quiz_grading.prepare_grading(db, quiz_id, user.id, final_answers)
    db.close()
    return _stream_grading(context)


@router.get("/{quiz_id}/results", response_model=QuizResultsResponse)
def get_results(
    quiz_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return quiz_attempts.get_results(db, quiz_id, user.id)


@router.post("/{quiz_id}/regrade")
def regrade_quiz(
    quiz_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    _rl=rate_limit(
        key_prefix="quiz_regrade",
        limit=int(settings.rate_limit_regrade_per_hour),
        window_seconds=60 * 60,
    ),
):
    context = quiz_grading.prepare_regrade(db, quiz_id, user.id)
    db.close()
    return _stream_grading(context)
