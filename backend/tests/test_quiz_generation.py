import json
import uuid

import httpx
import pytest
from sqlalchemy import func, select

from skillstrainer.core.errors import ConflictError, ForbiddenError, NotFoundError
from skillstrainer.models.attempt import Answer, AnswerFormat, Question, QuizAttempt, QuizDifficulty, QuizStatus
from skillstrainer.models.study_session import MaterialStatus
from skillstrainer.services import quiz_generation, structured_output
from skillstrainer.services.streaming import StreamChannel


def _mcq(n: int) -> dict:
    return {
        "questionNumber": n,
        "questionType": "mcq",
        "questionText": f"What does step {n} do?",
        "options": ["Parses", "Compiles", "Links", "Runs"],
        "correctAnswer": "Parses",
        "explanation": "The first step parses.",
        "difficulty": "easy",
        "tags": ["pipeline"],
    }


def _llm_reply(items) -> str:
    return f"<analysis>plan</analysis><questions>{json.dumps(items)}</questions>"


def _fake_completion(monkeypatch, replies):
    calls = []

    def _call(*, system_prompt, messages, temperature):
        calls.append(messages)
        nxt = replies.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    monkeypatch.setattr(structured_output, "call_completion", _call)
    return calls


def _run(db, prepared, count: int, fmt: AnswerFormat = AnswerFormat.mcq):
    events = []
    params = quiz_generation.GenerationParams(
        prepared=prepared,
        difficulty=QuizDifficulty.easy,
        answer_format=fmt,
        question_count=count,
    )
    with StreamChannel(events.append) as ch:
        quiz_generation.execute_generation(db, params, ch)
    return events


def test_prepare_joins_ready_materials(db, user, make_session):
    s = make_session(
        user,
        materials=[
            ("first text", MaterialStatus.ready),
            ("still processing", MaterialStatus.processing),
            ("second text", MaterialStatus.ready),
            ("broken", MaterialStatus.failed),
        ],
    )

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)

    assert prepared.materials_text == "first text\n\nsecond text"
    assert prepared.materials_used is True
    assert prepared.subject == "Python"


def test_prepare_without_materials_uses_empty_text(db, user, make_session):
    s = make_session(user)
    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    assert prepared.materials_text == ""
    assert prepared.materials_used is False


def test_prepare_rejects_unknown_session(db, user):
    with pytest.raises(NotFoundError):
        quiz_generation.prepare_generation(db, uuid.uuid4(), user.id)


def test_prepare_rejects_other_users_session(db, user, make_user, make_session):
    other = make_user()
    s = make_session(other)
    with pytest.raises(ForbiddenError):
        quiz_generation.prepare_generation(db, s.id, user.id)


def test_prepare_conflicts_while_a_generation_is_running(db, user, make_session, make_attempt):
    s = make_session(user)
    make_attempt(user, s, status=QuizStatus.generating)

    with pytest.raises(ConflictError):
        quiz_generation.prepare_generation(db, s.id, user.id)


def test_full_generation_streams_items_and_completes(db, user, make_session, monkeypatch):
    s = make_session(user)
    _fake_completion(monkeypatch, [_llm_reply([_mcq(1), _mcq(2), _mcq(3)])])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 3)

    items = [e for e in events if e["type"] == "item"]
    assert len(items) == 3
    assert [e["type"] for e in events].count("complete") == 1
    assert events[-1]["type"] == "complete"
    assert not [e for e in events if e["type"] == "error"]

    db.expire_all()
    attempt = db.scalar(select(QuizAttempt).where(QuizAttempt.session_id == s.id))
    assert events[-1]["data"] == {"quizAttemptId": str(attempt.id)}
    assert attempt.status == QuizStatus.in_progress
    assert attempt.question_count == 3
    assert attempt.started_at is not None

    answers = db.scalar(select(func.count(Answer.id)).where(Answer.quiz_attempt_id == attempt.id))
    assert answers == 3


def test_partial_generation_is_still_a_success(db, user, make_session, monkeypatch):
    s = make_session(user)
    _fake_completion(monkeypatch, [_llm_reply([_mcq(1), _mcq(2), _mcq(3)])])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 5)

    assert [e for e in events if e["type"] == "error"] == []
    assert events[-1]["type"] == "complete"
    assert len([e for e in events if e["type"] == "item"]) == 3

    db.expire_all()
    attempt = db.scalar(select(QuizAttempt).where(QuizAttempt.session_id == s.id))
    assert attempt.question_count == 3
    assert attempt.status == QuizStatus.in_progress


def test_item_events_never_reveal_answers(db, user, make_session, monkeypatch):
    s = make_session(user)
    _fake_completion(monkeypatch, [_llm_reply([_mcq(1)])])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 1)

    item = next(e for e in events if e["type"] == "item")
    assert set(item["data"].keys()) == {"id", "questionNumber", "questionType", "questionText", "options"}


def test_questions_are_numbered_in_generation_order(db, user, make_session, monkeypatch):
    s = make_session(user)
    _fake_completion(monkeypatch, [_llm_reply([_mcq(7), _mcq(3)])])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 2)

    assert [e["data"]["questionNumber"] for e in events if e["type"] == "item"] == [1, 2]
    progress = [e["message"] for e in events if e["type"] == "progress"]
    assert progress == [quiz_generation.ANALYZING_MESSAGE, "Generating question 1/2...", "Generating question 2/2..."]


def test_item_is_persisted_before_it_is_emitted(db, user, make_session, monkeypatch):
    s = make_session(user)
    _fake_completion(monkeypatch, [_llm_reply([_mcq(1), _mcq(2)])])

    persisted_at_emit = []

    def _sink(event):
        if event["type"] == "item":
            qid = uuid.UUID(event["data"]["id"])
            persisted_at_emit.append(db.scalar(select(func.count(Question.id)).where(Question.id == qid)))

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    params = quiz_generation.GenerationParams(
        prepared=prepared, difficulty=QuizDifficulty.easy, answer_format=AnswerFormat.mcq, question_count=2
    )
    with StreamChannel(_sink) as ch:
        quiz_generation.execute_generation(db, params, ch)

    assert persisted_at_emit == [1, 1]


def test_validation_failure_leaves_attempt_generating(db, user, make_session, monkeypatch):
    s = make_session(user)
    calls = _fake_completion(monkeypatch, ["nothing useful", "still nothing"])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 3)

    assert len(calls) == 2
    assert events[-1] == {"type": "error", "message": quiz_generation.GENERATION_FAILED_MESSAGE}
    assert [e["type"] for e in events].count("error") == 1

    db.expire_all()
    attempt = db.scalar(select(QuizAttempt).where(QuizAttempt.session_id == s.id))
    assert attempt.status == QuizStatus.generating
    assert db.scalar(select(func.count(Question.id)).where(Question.quiz_attempt_id == attempt.id)) == 0

    # The stuck attempt blocks a second generation for the session.
    with pytest.raises(ConflictError):
        quiz_generation.prepare_generation(db, s.id, user.id)


def test_transport_error_becomes_single_error_event(db, user, make_session, monkeypatch):
    s = make_session(user)
    calls = _fake_completion(monkeypatch, [httpx.ConnectError("refused")])

    prepared = quiz_generation.prepare_generation(db, s.id, user.id)
    events = _run(db, prepared, 2)

    assert len(calls) == 1
    assert events == [
        {"type": "progress", "message": quiz_generation.ANALYZING_MESSAGE},
        {"type": "error", "message": quiz_generation.GENERATION_FAILED_MESSAGE},
    ]
