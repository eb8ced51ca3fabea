"""
Note and attempt operations against a connected personal backend.

Every function takes the client to use as its first argument and surfaces
backend failures unchanged as `BackendError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from studylog.db import (
    ATTEMPTS_TABLE,
    NOTES_TABLE,
    Attempt,
    BackendClient,
    Note,
    NoteWithAttempts,
    utc_now_iso,
)
from studylog.errors import BackendError, not_found

logger = logging.getLogger(__name__)

NOTE_FIELDS = ("title", "question", "standard_answer", "key_points")
ATTEMPT_FIELDS = ("answer_content", "is_correct", "correction", "error_content", "usecase")
_OPTIONAL_TEXT = ("standard_answer", "key_points", "correction", "error_content", "usecase")

MAX_NUMBERING_RETRIES = 3


def _or_none(value: Optional[str]) -> Optional[str]:
    return value or None


def _pick(values: dict, allowed: Iterable[str]) -> dict:
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    return {
        key: _or_none(value) if key in _OPTIONAL_TEXT else value
        for key, value in values.items()
    }


def list_notes(client: BackendClient) -> List[Note]:
    rows = client.select(NOTES_TABLE, order_by="updated_at", descending=True)
    return [Note.from_row(r) for r in rows]


def list_notes_with_attempts(client: BackendClient) -> List[NoteWithAttempts]:
    """Notes, newest first, each with its attempts in storage order."""
    rows = client.select(
        NOTES_TABLE, order_by="updated_at", descending=True, embed=ATTEMPTS_TABLE
    )
    return [NoteWithAttempts.from_row(r) for r in rows]


def get_note(client: BackendClient, note_id: str) -> Note:
    rows = client.select(NOTES_TABLE, filters={"id": note_id}, limit=1)
    if not rows:
        raise not_found("Note", note_id)
    return Note.from_row(rows[0])


def create_note(
    client: BackendClient,
    user_id: str,
    title: str,
    question: str,
    standard_answer: Optional[str] = None,
    key_points: Optional[str] = None,
) -> Note:
    row = client.insert(
        NOTES_TABLE,
        {
            "user_id": user_id,
            "title": title,
            "question": question,
            "standard_answer": _or_none(standard_answer),
            "key_points": _or_none(key_points),
        },
    )
    return Note.from_row(row)


def update_note(client: BackendClient, note_id: str, **changes) -> Note:
    """Apply a partial update; `updated_at` is always moved to now."""
    values = _pick(changes, NOTE_FIELDS)
    values["updated_at"] = utc_now_iso()
    rows = client.update(NOTES_TABLE, {"id": note_id}, values)
    if not rows:
        raise not_found("Note", note_id)
    return Note.from_row(rows[0])


def delete_note(client: BackendClient, note_id: str) -> None:
    # Attempts go with it through the foreign key's ON DELETE CASCADE.
    client.delete(NOTES_TABLE, {"id": note_id})


def list_attempts(client: BackendClient, note_id: str) -> List[Attempt]:
    rows = client.select(
        ATTEMPTS_TABLE, filters={"note_id": note_id}, order_by="attempt_number"
    )
    return [Attempt.from_row(r) for r in rows]


def get_attempt(client: BackendClient, attempt_id: str) -> Attempt:
    rows = client.select(ATTEMPTS_TABLE, filters={"id": attempt_id}, limit=1)
    if not rows:
        raise not_found("Attempt", attempt_id)
    return Attempt.from_row(rows[0])


def create_attempt(
    client: BackendClient,
    note_id: str,
    attempt_number: int,
    answer_content: str,
    is_correct: bool,
    correction: Optional[str] = None,
    error_content: Optional[str] = None,
    usecase: Optional[str] = None,
) -> Attempt:
    row = client.insert(
        ATTEMPTS_TABLE,
        {
            "note_id": note_id,
            "attempt_number": attempt_number,
            "answer_content": answer_content,
            "is_correct": is_correct,
            "correction": _or_none(correction),
            "error_content": _or_none(error_content),
            "usecase": _or_none(usecase),
        },
    )
    return Attempt.from_row(row)


def next_attempt_number(client: BackendClient, note_id: str) -> int:
    """Numbers only ever grow: gaps left by deletes are not reused."""
    rows = client.select(
        ATTEMPTS_TABLE,
        filters={"note_id": note_id},
        order_by="attempt_number",
        descending=True,
        limit=1,
    )
    return int(rows[0]["attempt_number"]) + 1 if rows else 1


def record_attempt(
    client: BackendClient,
    note_id: str,
    answer_content: str,
    is_correct: bool,
    correction: Optional[str] = None,
    error_content: Optional[str] = None,
    usecase: Optional[str] = None,
) -> Attempt:
    """
    Create the next attempt for a note.

    A concurrent writer can take the same number between the read and the
    insert; the (note_id, attempt_number) unique key rejects the loser, which
    recomputes and tries again.
    """
    retries_left = MAX_NUMBERING_RETRIES
    while True:
        number = next_attempt_number(client, note_id)
        try:
            return create_attempt(
                client,
                note_id,
                number,
                answer_content,
                is_correct,
                correction=correction,
                error_content=error_content,
                usecase=usecase,
            )
        except BackendError as e:
            retries_left -= 1
            if not e.is_unique_violation or retries_left == 0:
                raise
            logger.info("Attempt #%s of note %s was taken, retrying", number, note_id)


def update_attempt(client: BackendClient, attempt_id: str, **changes) -> Attempt:
    values = _pick(changes, ATTEMPT_FIELDS)
    if not values:
        return get_attempt(client, attempt_id)
    rows = client.update(ATTEMPTS_TABLE, {"id": attempt_id}, values)
    if not rows:
        raise not_found("Attempt", attempt_id)
    return Attempt.from_row(rows[0])


def delete_attempt(client: BackendClient, attempt_id: str) -> None:
    client.delete(ATTEMPTS_TABLE, {"id": attempt_id})


def search_notes(notes: Iterable[Note], query: str) -> list:
    """Case-insensitive match on title or question; an empty query keeps all."""
    needle = query.strip().lower()
    if not needle:
        return list(notes)
    return [
        n for n in notes if needle in n.title.lower() or needle in n.question.lower()
    ]


@dataclass
class NoteSummary:
    note_id: str
    title: str
    total_attempts: int
    correct_attempts: int
    incorrect_attempts: int
    latest_attempt: Optional[Attempt]
    history: List[Attempt]

    def as_dict(self) -> dict:
        return {
            "note_id": self.note_id,
            "title": self.title,
            "total_attempts": self.total_attempts,
            "correct_attempts": self.correct_attempts,
            "incorrect_attempts": self.incorrect_attempts,
            "latest_attempt": self.latest_attempt.as_dict() if self.latest_attempt else None,
            "history": [a.as_dict() for a in self.history],
        }


def summarize_note(note: NoteWithAttempts) -> NoteSummary:
    history = sorted(note.attempts, key=lambda a: a.attempt_number)
    correct = sum(1 for a in history if a.is_correct)
    return NoteSummary(
        note_id=note.id,
        title=note.title,
        total_attempts=len(history),
        correct_attempts=correct,
        incorrect_attempts=len(history) - correct,
        latest_attempt=history[-1] if history else None,
        history=history,
    )


def summarize_notes(notes: Iterable[NoteWithAttempts]) -> dict:
    summaries = [summarize_note(n) for n in notes]
    return {
        "note_count": len(summaries),
        "pending_corrections": sum(s.incorrect_attempts for s in summaries),
        "notes": summaries,
    }
