from __future__ import annotations

from datetime import datetime, timedelta
import logging

from rq import get_current_job
from sqlalchemy import delete, select

from skillstrainer.core.config import settings
from skillstrainer.core.redis_client import get_queue, get_redis
from skillstrainer.db import session as db_session
from skillstrainer.models.attempt import Answer, Question, QuizAttempt, QuizStatus


log = logging.getLogger(__name__)

_SWEEP_LOCK_KEY = "locks:stale_generations"


def reconcile_stale_generations_job(*, max_age_minutes: int | None = None) -> dict:
    """Delete quiz attempts that never left `generating`.

    A failed generation keeps its attempt in `generating`, which blocks new
    generations for the session until this sweep removes it. Safe to run repeatedly.
    """

    try:
        job = get_current_job()
    except Exception:
        job = None

    age = int(max_age_minutes if max_age_minutes is not None else settings.quiz_stale_generation_minutes)
    cutoff = datetime.utcnow() - timedelta(minutes=max(1, age))

    with db_session.open_session() as db:
        stale_ids = list(
            db.scalars(
                select(QuizAttempt.id)
                .where(QuizAttempt.status == QuizStatus.generating)
                .where(QuizAttempt.created_at <= cutoff)
            ).all()
        )
        if stale_ids:
            db.execute(delete(Answer).where(Answer.quiz_attempt_id.in_(stale_ids)))
            db.execute(delete(Question).where(Question.quiz_attempt_id.in_(stale_ids)))
            db.execute(delete(QuizAttempt).where(QuizAttempt.id.in_(stale_ids)))
            db.commit()

    out = {
        "ok": True,
        "max_age_minutes": age,
        "cutoff": cutoff.isoformat(),
        "deleted_attempts": len(stale_ids),
    }

    if job is not None:
        try:
            meta = dict(job.meta or {})
            meta.update(out)
            job.meta = meta
            job.save_meta()
        except Exception:
            log.warning("reconcile_stale_generations_job: failed to save job meta", exc_info=True)

    log.info("reconcile_stale_generations_job: max_age_minutes=%s deleted_attempts=%s", age, len(stale_ids))
    return out


def sweep_interval_seconds() -> int:
    return max(60, int(settings.quiz_stale_generation_minutes) * 60 // 2)


def enqueue_stale_sweep(*, lock_ttl_seconds: int | None = None) -> str | None:
    """Enqueue the sweep unless another trigger did so within the lock window.

    Returns the rq job id, or None when the lock is held.
    """

    ttl = int(lock_ttl_seconds if lock_ttl_seconds is not None else sweep_interval_seconds())
    if not get_redis().set(_SWEEP_LOCK_KEY, "1", nx=True, ex=max(1, ttl)):
        return None

    job = get_queue(str(settings.rq_queue_default)).enqueue(
        reconcile_stale_generations_job,
        max_age_minutes=int(settings.quiz_stale_generation_minutes),
        job_timeout=60 * 5,
        result_ttl=60 * 60,
        failure_ttl=60 * 60,
    )
    log.info("stale generation sweep enqueued job_id=%s", job.id)
    return str(job.id)
