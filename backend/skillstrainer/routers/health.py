from __future__ import annotations

import hmac
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Header
from sqlalchemy import text

from skillstrainer.core.config import settings
from skillstrainer.core.errors import ForbiddenError, NotFoundError, ServiceUnavailableError
from skillstrainer.core.redis_client import get_redis
from skillstrainer.db import session as db_session
from skillstrainer.services import stale_generation_jobs


log = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    expected = (settings.cron_secret or "").strip()
    # Cron endpoints do not exist unless a secret is configured.
    if not expected:
        raise NotFoundError("not found")
    if not hmac.compare_digest((x_cron_secret or "").strip(), expected):
        raise ForbiddenError("invalid cron secret")


def _ping_database() -> None:
    with db_session.open_session() as db:
        db.execute(text("SELECT 1"))


def _ping_redis() -> None:
    get_redis().ping()


_READINESS_CHECKS: dict[str, Callable[[], None]] = {
    "database": _ping_database,
    "redis": _ping_redis,
}


@router.get("")
def health():
    return {"status": "ok"}


@router.get("/live")
def live():
    return {"status": "live"}


@router.get("/ready")
def ready():
    for name, check in _READINESS_CHECKS.items():
        try:
            check()
        except Exception as e:
            log.warning("readiness check failed check=%s error=%s", name, e)
            raise ServiceUnavailableError(f"{name} not ready") from e
    return {"status": "ready"}


@router.post("/cron/stale-generations", dependencies=[Depends(require_cron_secret)])
def cron_stale_generations():
    job_id = stale_generation_jobs.enqueue_stale_sweep()
    if job_id is None:
        return {"ok": True, "enqueued": False, "reason": "locked"}
    return {"ok": True, "enqueued": True, "job_id": job_id}
