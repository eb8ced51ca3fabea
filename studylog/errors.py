"""
Error taxonomy shared by every backend client.
"""

from __future__ import annotations

import enum
from typing import Optional

# PostgREST / Postgres codes we classify on.
UNDEFINED_TABLE = "42P01"
SCHEMA_CACHE_MISS = "PGRST205"
NO_ROWS = "PGRST116"
UNIQUE_VIOLATION = "23505"
INVALID_TEXT_REPRESENTATION = "22P02"


class ErrorKind(enum.Enum):
    CONFIGURATION = "configuration"
    SCHEMA = "schema"
    NOT_FOUND = "not_found"
    BACKEND = "backend"
    UNKNOWN = "unknown"


class BackendError(Exception):
    """
    A failure reported by the shared or a personal backend.

    `message` is the backend's own text, kept verbatim for display. `code` is
    the backend error code when one was provided (Postgres SQLSTATE or a
    PostgREST code) and `status` the HTTP status for REST backends.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.status = status

    @property
    def is_missing_table(self) -> bool:
        return self.kind == ErrorKind.SCHEMA

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION

    def __repr__(self) -> str:
        return f"BackendError({self.kind.name}, {self.message!r}, code={self.code!r})"


def missing_table(table: str) -> BackendError:
    return BackendError(
        ErrorKind.SCHEMA,
        f'relation "public.{table}" does not exist',
        code=UNDEFINED_TABLE,
    )


def not_found(what: str, row_id: str) -> BackendError:
    return BackendError(ErrorKind.NOT_FOUND, f"{what} {row_id} not found", code=NO_ROWS)
