from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from pydantic import TypeAdapter, ValidationError

from skillstrainer.core.config import settings
from skillstrainer.core.sanitize import log_suspicious_patterns, sanitize_for_prompt
from skillstrainer.schemas.quiz import LlmFreeTextQuestion, LlmGradedAnswer, LlmMcqQuestion, LlmQuestion
from skillstrainer.services import prompts


log = logging.getLogger(__name__)


class StructuredOutputError(RuntimeError):
    pass


class ValidationFailedError(StructuredOutputError):
    """Model output never became schema-valid, even after the corrective retry."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"structured output validation failed: {detail}")
        self.detail = detail


class LeakDetectedError(StructuredOutputError):
    pass


class LlmNotConfiguredError(StructuredOutputError):
    pass


@dataclass(frozen=True)
class GenerateQuizParams:
    subject: str
    goal: str
    difficulty: str
    answer_format: str
    question_count: int
    materials_text: str | None


@dataclass(frozen=True)
class FreeTextAnswer:
    question_number: int
    question_text: str
    correct_answer: str
    user_answer: str


@dataclass(frozen=True)
class GradeAnswersParams:
    subject: str
    answers: list[FreeTextAnswer]


_questions_adapter: TypeAdapter = TypeAdapter(list[LlmQuestion])
_graded_adapter: TypeAdapter = TypeAdapter(list[LlmGradedAnswer])


def extract_block(text: str, name: str) -> str | None:
    m = re.search(rf"<{re.escape(name)}>([\s\S]*?)</{re.escape(name)}>", text or "")
    if not m:
        return None
    return m.group(1).strip()


def clamp_score(raw: float) -> float:
    if raw < 0.25:
        return 0.0
    if raw < 0.75:
        return 0.5
    return 1.0


def check_leak(text: str) -> None:
    if prompts.SYSTEM_MARKER in (text or ""):
        raise LeakDetectedError("model response contains the system marker")


def _timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=float(settings.llm_timeout_connect),
        read=float(settings.llm_timeout_read),
        write=float(settings.llm_timeout_write),
        pool=3.0,
    )


def _headers() -> dict[str, str]:
    token = (settings.llm_api_key or "").strip()
    headers: dict[str, str] = {"Authorization": f"Bearer {token}"}
    referer = str(settings.llm_http_referer or "").strip()
    app_title = str(settings.llm_app_title or "").strip()
    if referer:
        headers["HTTP-Referer"] = referer
    if app_title:
        headers["X-Title"] = app_title
    return headers


def _stream_chunk(line: str) -> dict[str, Any] | None:
    # OpenAI-compatible streams: "data: {json}" lines, terminated by "data: [DONE]".
    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        chunk = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return chunk if isinstance(chunk, dict) else None


def _first_choice(chunk: dict[str, Any]) -> dict[str, Any]:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0]


def _stream_error(chunk: dict[str, Any], url: str) -> httpx.HTTPStatusError | None:
    """Providers report mid-stream failures in a 200 response; surface them as HTTP errors."""

    err = chunk.get("error")
    if err is None and _first_choice(chunk).get("finish_reason") != "error":
        return None

    detail = err if isinstance(err, dict) else {}
    try:
        status = int(detail.get("code"))
    except (TypeError, ValueError):
        status = 502
    if not 400 <= status <= 599:
        status = 502
    message = str(detail.get("message") or err or "provider error")

    request = httpx.Request("POST", url)
    return httpx.HTTPStatusError(
        f"provider error in stream: {message[:300]}",
        request=request,
        response=httpx.Response(status, request=request),
    )


def _delta_text(chunk: dict[str, Any]) -> str:
    delta = _first_choice(chunk).get("delta")
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


def call_completion(*, system_prompt: str, messages: list[dict[str, str]], temperature: float) -> str:
    """Issue one streaming chat-completions call and return the concatenated text.

    HTTP status errors and timeouts are raised as-is by httpx. An error chunk
    inside the stream is raised as `httpx.HTTPStatusError` too.
    """

    if not settings.llm_enabled or not (settings.llm_api_key or "").strip():
        raise LlmNotConfiguredError("llm provider is not configured")

    payload: dict[str, Any] = {
        "model": str(settings.llm_model),
        "stream": True,
        "max_tokens": int(settings.llm_max_tokens),
        "temperature": float(temperature),
        "messages": [{"role": "system", "content": system_prompt}, *messages],
    }
    url = str(settings.llm_base_url or "").rstrip("/") + "/chat/completions"

    parts: list[str] = []
    with httpx.Client(timeout=_timeout()) as client:
        with client.stream("POST", url, json=payload, headers=_headers()) as resp:
            resp.raise_for_status()
            for line in resp.iter_lines():
                chunk = _stream_chunk(line)
                if chunk is None:
                    continue
                failure = _stream_error(chunk, url)
                if failure is not None:
                    log.warning("llm stream reported an error status=%s", failure.response.status_code)
                    raise failure
                piece = _delta_text(chunk)
                if piece:
                    parts.append(piece)
    return "".join(parts)


def _parse(
    text: str,
    block_name: str,
    adapter: TypeAdapter,
    check: Callable[[list[Any]], None] | None,
) -> list[Any]:
    check_leak(text)
    block = extract_block(text, block_name)
    if block is None:
        raise ValueError(f"missing <{block_name}> block")
    items = adapter.validate_python(json.loads(block))
    if not items:
        raise ValueError(f"<{block_name}> block is empty")
    if check is not None:
        check(items)
    return items


def run_with_retry(
    *,
    system_prompt: str,
    user_message: str,
    block_name: str,
    adapter: TypeAdapter,
    temperature: float,
    check: Callable[[list[Any]], None] | None = None,
) -> list[Any]:
    messages = [{"role": "user", "content": user_message}]
    first = call_completion(system_prompt=system_prompt, messages=messages, temperature=temperature)
    try:
        return _parse(first, block_name, adapter, check)
    except (ValueError, ValidationError) as e:
        log.warning("structured output invalid, retrying block=%s error=%s", block_name, str(e)[:300])

    retry_messages = [
        *messages,
        {"role": "assistant", "content": first},
        {"role": "user", "content": prompts.CORRECTIVE_MESSAGE},
    ]
    second = call_completion(system_prompt=system_prompt, messages=retry_messages, temperature=temperature)
    try:
        return _parse(second, block_name, adapter, check)
    except (ValueError, ValidationError) as e:
        log.error("structured output invalid after retry block=%s first=%r", block_name, first[:500])
        raise ValidationFailedError(str(e)[:1000]) from e


def _format_checker(answer_format: str) -> Callable[[list[Any]], None] | None:
    if answer_format == "mcq":
        want = LlmMcqQuestion
    elif answer_format == "free_text":
        want = LlmFreeTextQuestion
    else:
        return None

    def _check(items: list[Any]) -> None:
        for q in items:
            if not isinstance(q, want):
                raise ValueError(f"question {q.questionNumber} is {q.questionType}, expected {answer_format}")

    return _check


def generate_questions(
    params: GenerateQuizParams,
    on_question: Callable[[LlmMcqQuestion | LlmFreeTextQuestion], None] | None = None,
) -> list[LlmMcqQuestion | LlmFreeTextQuestion]:
    subject = sanitize_for_prompt(params.subject)
    goal = sanitize_for_prompt(params.goal)
    materials = sanitize_for_prompt(params.materials_text) if params.materials_text else None

    log_suspicious_patterns(subject, "subject")
    log_suspicious_patterns(goal, "goal")
    if materials:
        log_suspicious_patterns(materials, "materials")

    questions = run_with_retry(
        system_prompt=prompts.generation_system_prompt(),
        user_message=prompts.generation_user_message(
            subject=subject,
            goal=goal,
            difficulty=params.difficulty,
            answer_format=params.answer_format,
            question_count=params.question_count,
            materials_text=materials,
        ),
        block_name="questions",
        adapter=_questions_adapter,
        temperature=float(settings.llm_generation_temperature),
        check=_format_checker(params.answer_format),
    )

    # The model occasionally overshoots; never keep more than was asked for.
    questions = questions[: int(params.question_count)]
    if on_question is not None:
        for q in questions:
            on_question(q)
    return questions


def grade_answers(
    params: GradeAnswersParams,
    on_graded: Callable[[LlmGradedAnswer], None] | None = None,
) -> list[LlmGradedAnswer]:
    subject = sanitize_for_prompt(params.subject)
    answers = [
        {
            "question_number": a.question_number,
            "question_text": sanitize_for_prompt(a.question_text),
            "correct_answer": sanitize_for_prompt(a.correct_answer),
            "user_answer": sanitize_for_prompt(a.user_answer),
        }
        for a in params.answers
    ]
    for a in answers:
        log_suspicious_patterns(a["user_answer"], f"answer:{a['question_number']}")

    raw = run_with_retry(
        system_prompt=prompts.grading_system_prompt(),
        user_message=prompts.grading_user_message(subject=subject, answers=answers),
        block_name="results",
        adapter=_graded_adapter,
        temperature=float(settings.llm_grading_temperature),
    )

    graded: list[LlmGradedAnswer] = []
    for r in raw:
        score = clamp_score(float(r.score))
        graded.append(r.model_copy(update={"score": score, "isCorrect": score == 1.0}))

    if on_graded is not None:
        for g in graded:
            on_graded(g)
    return graded
