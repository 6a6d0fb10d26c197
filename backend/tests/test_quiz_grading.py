import json

import pytest
from sqlalchemy import select, update

from skillstrainer.core.errors import BadRequestError, ConflictError, ForbiddenError
from skillstrainer.models.attempt import Answer, QuestionType, QuizAttempt, QuizStatus
from skillstrainer.schemas.quiz import AnswerIn
from skillstrainer.services import quiz_grading, structured_output
from skillstrainer.services.streaming import StreamChannel


MCQ = QuestionType.mcq
FREE = QuestionType.free_text


def _results_reply(items) -> str:
    return f"<evaluation>ok</evaluation><results>{json.dumps(items)}</results>"


def _fake_completion(monkeypatch, replies):
    calls = []

    def _call(*, system_prompt, messages, temperature):
        calls.append(messages)
        return replies.pop(0)

    monkeypatch.setattr(structured_output, "call_completion", _call)
    return calls


def _grade(db, context):
    events = []
    with StreamChannel(events.append) as ch:
        quiz_grading.execute_grading(db, context, ch)
    return events


def _attempt(db, attempt_id) -> QuizAttempt:
    db.expire_all()
    return db.get(QuizAttempt, attempt_id)


def test_grade_mcq_ignores_case_and_surrounding_whitespace():
    assert quiz_grading.grade_mcq("  TypeScript ", "TypeScript")
    assert quiz_grading.grade_mcq("typescript", "TypeScript")
    assert not quiz_grading.grade_mcq("JavaScript", "TypeScript")
    assert not quiz_grading.grade_mcq(None, "TypeScript")


def test_mcq_only_quiz_is_graded_without_llm(db, user, make_session, make_attempt, monkeypatch):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(MCQ, "TypeScript", "  typescript ")])
    calls = _fake_completion(monkeypatch, [])

    context = quiz_grading.prepare_grading(db, a.id, user.id)
    assert _attempt(db, a.id).status == QuizStatus.grading

    events = _grade(db, context)

    assert calls == []
    assert events[-1] == {"type": "complete", "data": {"quizAttemptId": str(a.id), "score": 100.0}}
    graded = [e for e in events if e["type"] == "graded"]
    assert graded == [
        {"type": "graded", "data": {"questionNumber": 1, "score": 1.0, "isCorrect": True, "feedback": None}}
    ]

    attempt = _attempt(db, a.id)
    assert attempt.status == QuizStatus.completed
    assert attempt.score == 100.0
    assert attempt.completed_at is not None


def test_mixed_quiz_batches_free_text_into_one_call(db, user, make_session, make_attempt, monkeypatch):
    s = make_session(user)
    a = make_attempt(
        user,
        s,
        questions=[
            (MCQ, "Right", "Wrong"),
            (FREE, "Reference one", "My answer one"),
            (FREE, "Reference two", "My answer two"),
        ],
    )
    calls = _fake_completion(
        monkeypatch,
        [
            _results_reply(
                [
                    {"questionNumber": 2, "score": 0.9, "isCorrect": True, "feedback": "Solid."},
                    {"questionNumber": 3, "score": 0.4, "isCorrect": False, "feedback": "Incomplete."},
                ]
            )
        ],
    )

    context = quiz_grading.prepare_grading(db, a.id, user.id)
    events = _grade(db, context)

    assert len(calls) == 1
    assert "My answer one" in calls[0][0]["content"]
    assert "My answer two" in calls[0][0]["content"]

    graded = [e["data"] for e in events if e["type"] == "graded"]
    assert [(g["questionNumber"], g["score"], g["isCorrect"]) for g in graded] == [
        (1, 0.0, False),
        (2, 1.0, True),
        (3, 0.5, False),
    ]
    assert events[-1]["type"] == "complete"
    assert events[-1]["data"]["score"] == 50.0

    attempt = _attempt(db, a.id)
    assert attempt.status == QuizStatus.completed
    assert attempt.score == 50.0


def test_score_is_rounded_to_two_decimals(db, user, make_session, make_attempt, monkeypatch):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(MCQ, "A", "A"), (MCQ, "B", "x"), (MCQ, "C", "x")])
    _fake_completion(monkeypatch, [])

    events = _grade(db, quiz_grading.prepare_grading(db, a.id, user.id))
    assert events[-1]["data"]["score"] == 33.33


def test_missing_free_text_result_marks_quiz_ungraded_then_regrade_completes(
    db, user, make_session, make_attempt, monkeypatch
):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(FREE, "Ref one", "Answer one"), (FREE, "Ref two", "Answer two")])
    _fake_completion(
        monkeypatch,
        [_results_reply([{"questionNumber": 1, "score": 1, "isCorrect": True, "feedback": "Great."}])],
    )

    events = _grade(db, quiz_grading.prepare_grading(db, a.id, user.id))

    assert [e["type"] for e in events].count("error") == 1
    assert events[-1] == {"type": "error", "message": quiz_grading.GRADING_INCOMPLETE_MESSAGE}
    assert "complete" not in [e["type"] for e in events]

    attempt = _attempt(db, a.id)
    assert attempt.status == QuizStatus.submitted_ungraded
    assert attempt.score is None
    answers = db.scalars(select(Answer).where(Answer.quiz_attempt_id == a.id)).all()
    assert sorted(x.user_answer for x in answers) == ["Answer one", "Answer two"]

    calls = _fake_completion(
        monkeypatch,
        [
            _results_reply(
                [
                    {"questionNumber": 1, "score": 1, "isCorrect": True, "feedback": "Great."},
                    {"questionNumber": 2, "score": 0.5, "isCorrect": False, "feedback": "Partly."},
                ]
            )
        ],
    )
    context = quiz_grading.prepare_regrade(db, a.id, user.id)
    assert {x.user_answer for x in context.answers} == {"Answer one", "Answer two"}

    events = _grade(db, context)

    assert len(calls) == 1
    assert events[-1]["type"] == "complete"
    assert events[-1]["data"]["score"] == 75.0
    assert _attempt(db, a.id).status == QuizStatus.completed


def test_llm_failure_during_grading_marks_quiz_ungraded(db, user, make_session, make_attempt, monkeypatch):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(MCQ, "A", "A"), (FREE, "Ref", "Mine")])
    _fake_completion(monkeypatch, ["no results block", "still none"])

    events = _grade(db, quiz_grading.prepare_grading(db, a.id, user.id))

    assert events[-1] == {"type": "error", "message": quiz_grading.GRADING_FAILED_MESSAGE}
    assert _attempt(db, a.id).status == QuizStatus.submitted_ungraded

    # MCQ grading done before the failure is kept.
    scores = {x.user_answer: x.score for x in db.scalars(select(Answer).where(Answer.quiz_attempt_id == a.id)).all()}
    assert scores == {"A": 1.0, "Mine": None}


def test_prepare_grading_applies_final_answers(db, user, make_session, make_attempt):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(MCQ, "A", None)])
    question_id = db.scalar(select(Answer.question_id).where(Answer.quiz_attempt_id == a.id))

    context = quiz_grading.prepare_grading(db, a.id, user.id, [AnswerIn(questionId=str(question_id), answer="A")])

    assert [x.user_answer for x in context.answers] == ["A"]
    assert context.session_subject == "Python"


def test_prepare_grading_rejects_unanswered_questions(db, user, make_session, make_attempt):
    s = make_session(user)
    a = make_attempt(user, s, questions=[(MCQ, "A", "A"), (FREE, "Ref", "   ")])

    with pytest.raises(BadRequestError):
        quiz_grading.prepare_grading(db, a.id, user.id)
    assert _attempt(db, a.id).status == QuizStatus.in_progress


@pytest.mark.parametrize("status", [QuizStatus.completed, QuizStatus.grading])
def test_prepare_grading_conflicts_when_already_submitted(db, user, make_session, make_attempt, status):
    s = make_session(user)
    a = make_attempt(user, s, status=status, questions=[(MCQ, "A", "A")])

    with pytest.raises(ConflictError):
        quiz_grading.prepare_grading(db, a.id, user.id)


@pytest.mark.parametrize("status", [QuizStatus.generating, QuizStatus.submitted_ungraded])
def test_prepare_grading_rejects_wrong_lifecycle_as_bad_request(db, user, make_session, make_attempt, status):
    s = make_session(user)
    a = make_attempt(user, s, status=status, questions=[(MCQ, "A", "A")])

    with pytest.raises(BadRequestError):
        quiz_grading.prepare_grading(db, a.id, user.id)


def test_prepare_grading_rejects_other_users(db, user, make_user, make_session, make_attempt):
    other = make_user()
    s = make_session(other)
    a = make_attempt(other, s, questions=[(MCQ, "A", "A")])

    with pytest.raises(ForbiddenError):
        quiz_grading.prepare_grading(db, a.id, user.id)


def test_regrade_requires_ungraded_status(db, user, make_session, make_attempt):
    s = make_session(user)
    a = make_attempt(user, s, status=QuizStatus.completed, questions=[(MCQ, "A", "A")])

    with pytest.raises(ConflictError):
        quiz_grading.prepare_regrade(db, a.id, user.id)


def _lose_race_to(monkeypatch, winner_status: QuizStatus):
    real_load = quiz_grading.quiz_attempts.load_owned_attempt

    def _load(db, attempt_id, user_id):
        attempt = real_load(db, attempt_id, user_id)
        # A concurrent request flips the row after this one has read it.
        db.execute(
            update(QuizAttempt)
            .where(QuizAttempt.id == attempt_id)
            .values(status=winner_status)
            .execution_options(synchronize_session=False)
        )
        return attempt

    monkeypatch.setattr(quiz_grading.quiz_attempts, "load_owned_attempt", _load)


def test_concurrent_submit_loses_the_claim(db, user, make_session, make_attempt, monkeypatch):
    a = make_attempt(user, make_session(user), questions=[(MCQ, "A", "A")])
    _lose_race_to(monkeypatch, QuizStatus.grading)

    with pytest.raises(ConflictError):
        quiz_grading.prepare_grading(db, a.id, user.id)


def test_concurrent_regrade_loses_the_claim(db, user, make_session, make_attempt, monkeypatch):
    a = make_attempt(user, make_session(user), status=QuizStatus.submitted_ungraded, questions=[(MCQ, "A", "A")])
    _lose_race_to(monkeypatch, QuizStatus.grading)

    with pytest.raises(ConflictError):
        quiz_grading.prepare_regrade(db, a.id, user.id)
