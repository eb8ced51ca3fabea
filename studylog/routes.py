"""
HTTP routes for the study-log API.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Response

from studylog import __version__
from studylog import notes as ops
from studylog.client_cache import ClientCache
from studylog.config import get_settings
from studylog.connection import Connected, ConnectionManager
from studylog.dependencies import (
    get_access_token,
    get_client_cache,
    get_connection,
    get_current_identity,
    get_identity_client,
    require_connected,
)
from studylog.identity import AuthSession, Identity, IdentityClient
from studylog.schemas import (
    AttemptCreateRequest,
    AttemptResponse,
    AttemptUpdateRequest,
    ConnectionStatusResponse,
    HealthResponse,
    IdentityResponse,
    ListAttemptsResponse,
    ListNotesResponse,
    NoteCreateRequest,
    NoteDetailResponse,
    NoteResponse,
    NoteUpdateRequest,
    OAuthUrlResponse,
    SessionResponse,
    SettingsResponse,
    SetupRequest,
    SetupResponse,
    SignInRequest,
    SignUpResponse,
    SqlResponse,
    StatusResponse,
    SummaryResponse,
)
from studylog.setup_flow import USER_DATABASE_SQL, SetupFlow, SetupStep, normalize_url

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_response(session: AuthSession) -> SessionResponse:
    return SessionResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        identity=IdentityResponse(**session.identity.as_dict()),
    )


def _setup_response(flow: SetupFlow) -> SetupResponse:
    return SetupResponse(
        step=flow.step.value,
        url=flow.url or None,
        error=flow.error,
        error_kind=flow.error_kind.value if flow.error_kind else None,
        sql=flow.sql,
    )


@router.get("/health", response_model=HealthResponse)
def health_check():
    settings = get_settings()
    return HealthResponse(status="ok", service=settings.service_name, version=__version__)


@router.post("/auth/sign-in", response_model=SessionResponse)
def sign_in(
    payload: SignInRequest,
    identity_client: IdentityClient = Depends(get_identity_client),
):
    session = identity_client.sign_in_with_password(payload.email, payload.password)
    return _session_response(session)


@router.post("/auth/sign-up", response_model=SignUpResponse, status_code=201)
def sign_up(
    payload: SignInRequest,
    identity_client: IdentityClient = Depends(get_identity_client),
):
    session = identity_client.sign_up(payload.email, payload.password)
    if session is None:
        return SignUpResponse(confirmation_required=True)
    return SignUpResponse(
        confirmation_required=False, session=_session_response(session)
    )


@router.get("/auth/oauth/{provider}", response_model=OAuthUrlResponse)
def oauth_url(
    provider: str,
    redirect_to: str | None = Query(None),
    identity_client: IdentityClient = Depends(get_identity_client),
):
    target = redirect_to or get_settings().oauth_redirect_url
    return OAuthUrlResponse(url=identity_client.oauth_url(provider, target))


@router.get("/auth/me", response_model=IdentityResponse)
def who_am_i(identity: Identity = Depends(get_current_identity)):
    return IdentityResponse(**identity.as_dict())


@router.post("/auth/sign-out", response_model=StatusResponse)
def sign_out(
    token: str = Depends(get_access_token),
    manager: ConnectionManager = Depends(get_connection),
    identity_client: IdentityClient = Depends(get_identity_client),
):
    manager.reset()
    identity_client.sign_out(token)
    return StatusResponse(status="ok")


@router.get("/connection", response_model=ConnectionStatusResponse)
def connection_status(manager: ConnectionManager = Depends(get_connection)):
    state = manager.state
    response = ConnectionStatusResponse(status=state.status)
    if isinstance(state, Connected):
        response.settings = SettingsResponse(
            supabase_url=state.settings.supabase_url,
            created_at=state.settings.created_at,
            updated_at=state.settings.updated_at,
        )
    else:
        response.message = getattr(state, "message", None)
    return response


@router.get("/setup/sql", response_model=SqlResponse)
def setup_sql():
    return SqlResponse(sql=USER_DATABASE_SQL)


@router.post("/setup/test", response_model=SetupResponse)
def setup_test(
    payload: SetupRequest,
    identity: Identity = Depends(get_current_identity),
    identity_client: IdentityClient = Depends(get_identity_client),
    cache: ClientCache = Depends(get_client_cache),
):
    flow = SetupFlow(identity_client, identity, cache)
    flow.submit(payload.url, payload.key)
    return _setup_response(flow)


@router.post("/setup/confirm", response_model=SetupResponse)
def setup_confirm(
    payload: SetupRequest,
    identity: Identity = Depends(get_current_identity),
    identity_client: IdentityClient = Depends(get_identity_client),
    cache: ClientCache = Depends(get_client_cache),
):
    flow = SetupFlow(
        identity_client,
        identity,
        cache,
        step=SetupStep.CREATE_TABLES,
        url=normalize_url(payload.url),
        key=payload.key,
    )
    flow.confirm_tables_created()
    return _setup_response(flow)


@router.get("/notes", response_model=ListNotesResponse)
def list_notes(
    q: str | None = Query(None, max_length=200),
    conn: Connected = Depends(require_connected),
):
    notes = ops.list_notes(conn.client)
    if q:
        notes = ops.search_notes(notes, q)
    return ListNotesResponse(notes=[NoteResponse(**n.as_dict()) for n in notes])


@router.get("/notes/summary", response_model=SummaryResponse)
def notes_summary(
    q: str | None = Query(None, max_length=200),
    conn: Connected = Depends(require_connected),
):
    all_notes = ops.list_notes_with_attempts(conn.client)
    # Counters cover every note; the search only narrows the listing.
    summary = ops.summarize_notes(all_notes)
    notes = ops.search_notes(all_notes, q) if q else all_notes
    shown = {n.id for n in notes}
    return SummaryResponse(
        note_count=summary["note_count"],
        pending_corrections=summary["pending_corrections"],
        notes=[n.as_dict() for n in notes],
        summaries=[s.as_dict() for s in summary["notes"] if s.note_id in shown],
    )


@router.post("/notes", response_model=NoteResponse, status_code=201)
def create_note(
    payload: NoteCreateRequest,
    conn: Connected = Depends(require_connected),
):
    note = ops.create_note(
        conn.client,
        conn.settings.user_id,
        payload.title,
        payload.question,
        standard_answer=payload.standard_answer,
        key_points=payload.key_points,
    )
    return NoteResponse(**note.as_dict())


@router.get("/notes/{note_id}", response_model=NoteDetailResponse)
def get_note(note_id: str, conn: Connected = Depends(require_connected)):
    note = ops.get_note(conn.client, note_id)
    attempts = ops.list_attempts(conn.client, note_id)
    return NoteDetailResponse(
        note=NoteResponse(**note.as_dict()),
        attempts=[AttemptResponse(**a.as_dict()) for a in attempts],
    )


@router.patch("/notes/{note_id}", response_model=NoteResponse)
def update_note(
    note_id: str,
    payload: NoteUpdateRequest,
    conn: Connected = Depends(require_connected),
):
    changes = payload.model_dump(exclude_unset=True)
    for required in ("title", "question"):
        if changes.get(required, "") is None:
            del changes[required]
    note = ops.update_note(conn.client, note_id, **changes)
    return NoteResponse(**note.as_dict())


@router.delete("/notes/{note_id}", status_code=204)
def delete_note(note_id: str, conn: Connected = Depends(require_connected)):
    ops.delete_note(conn.client, note_id)
    return Response(status_code=204)


@router.get("/notes/{note_id}/attempts", response_model=ListAttemptsResponse)
def list_attempts(note_id: str, conn: Connected = Depends(require_connected)):
    attempts = ops.list_attempts(conn.client, note_id)
    return ListAttemptsResponse(attempts=[AttemptResponse(**a.as_dict()) for a in attempts])


@router.post("/notes/{note_id}/attempts", response_model=AttemptResponse, status_code=201)
def create_attempt(
    note_id: str,
    payload: AttemptCreateRequest,
    conn: Connected = Depends(require_connected),
):
    ops.get_note(conn.client, note_id)
    # Correct answers carry no correction notes.
    extras = (
        {}
        if payload.is_correct
        else {
            "correction": payload.correction,
            "error_content": payload.error_content,
            "usecase": payload.usecase,
        }
    )
    attempt = ops.record_attempt(
        conn.client, note_id, payload.answer_content, payload.is_correct, **extras
    )
    return AttemptResponse(**attempt.as_dict())


@router.patch("/attempts/{attempt_id}", response_model=AttemptResponse)
def update_attempt(
    attempt_id: str,
    payload: AttemptUpdateRequest,
    conn: Connected = Depends(require_connected),
):
    changes = payload.model_dump(exclude_unset=True)
    for required in ("answer_content", "is_correct"):
        if changes.get(required, "") is None:
            del changes[required]
    attempt = ops.update_attempt(conn.client, attempt_id, **changes)
    return AttemptResponse(**attempt.as_dict())


@router.delete("/attempts/{attempt_id}", status_code=204)
def delete_attempt(attempt_id: str, conn: Connected = Depends(require_connected)):
    ops.delete_attempt(conn.client, attempt_id)
    return Response(status_code=204)
