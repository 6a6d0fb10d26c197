import os
import sys
from pathlib import Path
import uuid
import time

import pytest
from fastapi.testclient import TestClient

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from skillstrainer.core.config import settings
from skillstrainer.db.base import Base
from skillstrainer.db import session as session_module
from skillstrainer.main import create_app

# Import models so that they are registered in Base.metadata before create_all.
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


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and self._get_entry(key) is not None:
            return None
        exp = (self._now() + int(ex)) if ex else None
        self._data[key] = (value, exp)
        return True

    def delete(self, key: str):
        self._data.pop(key, None)
        return 1

    def incr(self, key: str):
        cur = self.get(key)
        n = int(cur or 0) + 1
        _, exp = self._data.get(key, ("", None))
        self._data[key] = (str(n), exp)
        return n

    def expire(self, key: str, seconds: int):
        entry = self._get_entry(key)
        if not entry:
            return False
        value, _ = entry
        self._data[key] = (value, self._now() + int(seconds))
        return True

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))

    def flushall(self):
        self._data.clear()
        return True


# Configure test DB (SQLite in-memory) at import time so every module that
# resolves skillstrainer.db.session.SessionLocal at call time gets this engine.
_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
Base.metadata.create_all(bind=_engine)
session_module.engine = _engine
session_module.SessionLocal = session_module.sessionmaker(autocommit=False, autoflush=False, bind=_engine)


# Stub Redis at import time (rate limiting + cron locks).
_mem_redis = _MemoryRedis()
import skillstrainer.core.redis_client as redis_client_module

redis_client_module.get_redis = lambda: _mem_redis

import skillstrainer.core.rate_limit as rate_limit_module
rate_limit_module.get_redis = lambda: _mem_redis

import skillstrainer.routers.health as health_router_module
health_router_module.get_redis = lambda: _mem_redis

import skillstrainer.services.stale_generation_jobs as stale_jobs_module
stale_jobs_module.get_redis = lambda: _mem_redis


@pytest.fixture(autouse=True)
def _reset_redis():
    _mem_redis.flushall()
    yield


@pytest.fixture(scope="session")
def client():
    app = create_app()

    # Ensure app dependencies use our session factory.
    def _get_db_override():
        db = session_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_module.get_db] = _get_db_override
    return TestClient(app)


@pytest.fixture()
def db():
    with session_module.SessionLocal() as session:
        yield session


@pytest.fixture()
def make_user(db):
    def _make(name: str | None = None) -> User:
        u = User(name=name or f"test_{uuid.uuid4().hex[:8]}")
        db.add(u)
        db.commit()
        return u

    return _make


@pytest.fixture()
def user(make_user):
    return make_user()


@pytest.fixture()
def make_token():
    def _make(user_id) -> str:
        return jwt.encode(
            {"sub": str(user_id), "iss": settings.jwt_issuer},
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )

    return _make


@pytest.fixture()
def auth_headers(user, make_token):
    return {"Authorization": f"Bearer {make_token(user.id)}"}


@pytest.fixture()
def make_session(db):
    def _make(owner: User, *, subject: str = "Python", goal: str = "Pass the interview", materials=()) -> StudySession:
        s = StudySession(user_id=owner.id, name=f"{subject} prep", subject=subject, goal=goal)
        db.add(s)
        db.flush()
        for text, status in materials:
            db.add(
                Material(
                    session_id=s.id,
                    file_name=f"{uuid.uuid4().hex[:6]}.txt",
                    extracted_text=text,
                    token_count=len(text.split()),
                    status=status,
                )
            )
        db.commit()
        return s

    return _make


@pytest.fixture()
def make_attempt(db):
    """Create an attempt with questions given as (type, correct_answer, user_answer) tuples."""

    def _make(
        owner: User,
        session: StudySession,
        *,
        status: QuizStatus = QuizStatus.in_progress,
        questions=(),
        answer_format: AnswerFormat = AnswerFormat.mixed,
    ) -> QuizAttempt:
        attempt = QuizAttempt(
            session_id=session.id,
            user_id=owner.id,
            difficulty=QuizDifficulty.medium,
            answer_format=answer_format,
            question_count=len(questions),
            materials_used=False,
            status=status,
        )
        db.add(attempt)
        db.flush()
        for i, (qtype, correct, user_answer) in enumerate(questions, start=1):
            q = Question(
                quiz_attempt_id=attempt.id,
                question_number=i,
                question_type=qtype,
                question_text=f"Question {i}?",
                options=[correct, "Other 1", "Other 2", "Other 3"] if qtype == QuestionType.mcq else None,
                correct_answer=correct,
                explanation=f"Explanation {i}",
                difficulty=QuizDifficulty.medium,
                tags=["t"],
            )
            db.add(q)
            db.flush()
            db.add(Answer(question_id=q.id, quiz_attempt_id=attempt.id, user_answer=user_answer))
        db.commit()
        return attempt

    return _make
