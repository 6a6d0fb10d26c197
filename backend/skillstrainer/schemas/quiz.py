from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator


Difficulty = Literal["easy", "medium", "hard"]
ConceptTags = Annotated[list[str], Field(min_length=1, max_length=3)]


class LlmMcqQuestion(BaseModel):
    questionNumber: int
    questionType: Literal["mcq"]
    questionText: str = Field(min_length=1)
    options: list[str] = Field(min_length=4, max_length=4)
    correctAnswer: str = Field(min_length=1)
    explanation: str = Field(min_length=1)
    difficulty: Difficulty
    tags: ConceptTags

    @model_validator(mode="after")
    def _correct_answer_is_an_option(self) -> "LlmMcqQuestion":
        if self.correctAnswer not in self.options:
            raise ValueError("correctAnswer must match one of the options verbatim")
        return self


class LlmFreeTextQuestion(BaseModel):
    questionNumber: int
    questionType: Literal["free_text"]
    questionText: str = Field(min_length=1)
    options: None = None
    correctAnswer: str = Field(min_length=1)
    explanation: str = Field(min_length=1)
    difficulty: Difficulty
    tags: ConceptTags


LlmQuestion = Annotated[Union[LlmMcqQuestion, LlmFreeTextQuestion], Field(discriminator="questionType")]


class LlmGradedAnswer(BaseModel):
    questionNumber: int = Field(ge=1)
    score: float = Field(ge=0, le=1)
    isCorrect: bool
    feedback: str


class AnswerIn(BaseModel):
    questionId: str
    answer: str = Field(max_length=20_000)


class SaveAnswersRequest(BaseModel):
    answers: list[AnswerIn] = Field(max_length=100)


class SubmitRequest(BaseModel):
    answers: list[AnswerIn] = Field(default_factory=list, max_length=100)


class SaveAnswersResponse(BaseModel):
    saved: int


class QuestionPublic(BaseModel):
    id: str
    questionNumber: int
    questionType: str
    questionText: str
    options: list[str] | None


class AnswerPublic(BaseModel):
    id: str
    questionId: str
    userAnswer: str | None
    answeredAt: datetime | None


class QuizResponse(BaseModel):
    id: str
    sessionId: str
    difficulty: str
    answerFormat: str
    questionCount: int
    materialsUsed: bool
    status: str
    startedAt: datetime | None
    createdAt: datetime
    questions: list[QuestionPublic]
    answers: list[AnswerPublic]


class QuestionResult(QuestionPublic):
    correctAnswer: str
    explanation: str
    tags: list[str]


class AnswerResult(AnswerPublic):
    score: float | None
    isCorrect: bool | None
    feedback: str | None


class ResultsSummary(BaseModel):
    correct: int
    partial: int
    incorrect: int
    total: int


class QuizResultsResponse(BaseModel):
    id: str
    sessionId: str
    difficulty: str
    answerFormat: str
    questionCount: int
    score: float | None
    status: str
    startedAt: datetime | None
    completedAt: datetime | None
    questions: list[QuestionResult]
    answers: list[AnswerResult]
    summary: ResultsSummary
