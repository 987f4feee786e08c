from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class CreateSessionRequest(BaseModel):
    email: str
    topic: str = Field(min_length=1)
    name: str | None = None


class AnswerRequest(BaseModel):
    answer: str


class ApproveRequest(BaseModel):
    refined_prompt: str | None = None
    skip_openai: bool = False
    skip_gemini: bool = False


# --- Responses ---


class QuestionResponse(BaseModel):
    id: str
    sequence: int
    question_text: str
    answer_text: str | None = None
    is_complete: bool = False


class SessionResponse(BaseModel):
    id: str
    topic: str
    state: str
    refined_prompt: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    refined_at: datetime | None = None
    completed_at: datetime | None = None


class CreateSessionResponse(BaseModel):
    session: SessionResponse
    questions: list[QuestionResponse]


class ProviderStatusResponse(BaseModel):
    provider: str
    status: str
    model_run_id: str | None = None
    error_message: str | None = None
    external_status: str | None = None
    progress: dict[str, Any] = Field(default_factory=dict)


class ReportStatusResponse(BaseModel):
    id: str
    email_status: str
    summary_text: str | None = None
    sent_at: datetime | None = None
    email_error: str | None = None


class SessionStatusResponse(BaseModel):
    session: SessionResponse
    providers: list[ProviderStatusResponse]
    report: ReportStatusResponse | None = None


class AcceptedResponse(BaseModel):
    session_id: str
    accepted: bool
