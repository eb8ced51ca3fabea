"""
Pydantic schemas for the study-log API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class HealthResponse(BaseModel):
    status: Literal["ok"]
    service: str
    version: str


class StatusResponse(BaseModel):
    status: Literal["ok"]


class SignInRequest(_Request):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class IdentityResponse(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    identity: IdentityResponse


class SignUpResponse(BaseModel):
    confirmation_required: bool
    session: Optional[SessionResponse] = None


class OAuthUrlResponse(BaseModel):
    url: str


class SettingsResponse(BaseModel):
    supabase_url: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ConnectionStatusResponse(BaseModel):
    status: Literal["loading", "needs_setup", "connected", "error"]
    message: Optional[str] = None
    settings: Optional[SettingsResponse] = None


class SetupRequest(_Request):
    url: str = Field(..., max_length=2048)
    key: str = Field(..., max_length=4096)


class SetupResponse(BaseModel):
    step: Literal["input", "testing", "create_tables", "done"]
    url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    sql: Optional[str] = None


class SqlResponse(BaseModel):
    sql: str


class NoteCreateRequest(_Request):
    title: str = Field(..., min_length=1, max_length=500)
    question: str = Field(..., min_length=1)
    standard_answer: Optional[str] = None
    key_points: Optional[str] = None


class NoteUpdateRequest(_Request):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    question: Optional[str] = Field(default=None, min_length=1)
    standard_answer: Optional[str] = None
    key_points: Optional[str] = None


class AttemptResponse(BaseModel):
    id: str
    note_id: str
    attempt_number: int
    answer_content: str
    is_correct: bool
    correction: Optional[str] = None
    error_content: Optional[str] = None
    usecase: Optional[str] = None
    created_at: Optional[str] = None


class NoteResponse(BaseModel):
    id: str
    user_id: str
    title: str
    question: str
    standard_answer: Optional[str] = None
    key_points: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class NoteWithAttemptsResponse(NoteResponse):
    attempts: list[AttemptResponse]


class NoteDetailResponse(BaseModel):
    note: NoteResponse
    attempts: list[AttemptResponse]


class ListNotesResponse(BaseModel):
    notes: list[NoteResponse]


class AttemptCreateRequest(_Request):
    answer_content: str = Field(..., min_length=1)
    is_correct: bool = True
    correction: Optional[str] = None
    error_content: Optional[str] = None
    usecase: Optional[str] = None


class AttemptUpdateRequest(_Request):
    answer_content: Optional[str] = Field(default=None, min_length=1)
    is_correct: Optional[bool] = None
    correction: Optional[str] = None
    error_content: Optional[str] = None
    usecase: Optional[str] = None


class ListAttemptsResponse(BaseModel):
    attempts: list[AttemptResponse]


class NoteSummaryResponse(BaseModel):
    note_id: str
    title: str
    total_attempts: int
    correct_attempts: int
    incorrect_attempts: int
    latest_attempt: Optional[AttemptResponse] = None
    history: list[AttemptResponse]


class SummaryResponse(BaseModel):
    note_count: int
    pending_corrections: int
    notes: list[NoteWithAttemptsResponse]
    summaries: list[NoteSummaryResponse]
