"""
Records and backend clients for the shared and personal databases.

A `BackendClient` is the connection handle to one backend project: the shared
project (only the `user_settings` table) or a user's personal project
(`notes` and `attempts`). Implementations exist for PostgREST over HTTP
(`studylog.rest`), any SQLAlchemy URL, and an in-memory store for tests.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from studylog.errors import (
    UNIQUE_VIOLATION,
    BackendError,
    ErrorKind,
    missing_table,
)

NOTES_TABLE = "notes"
ATTEMPTS_TABLE = "attempts"
USER_SETTINGS_TABLE = "user_settings"

PERSONAL_TABLES = (NOTES_TABLE, ATTEMPTS_TABLE)
SHARED_TABLES = (USER_SETTINGS_TABLE,)

# (parent, child) -> foreign key column on the child
EMBEDDED_RELATIONS = {(NOTES_TABLE, ATTEMPTS_TABLE): "note_id"}

FOREIGN_KEY_VIOLATION = "23503"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class BackendClient(Protocol):
    """Table-level operations the service needs from a backend project."""

    def select(
        self,
        table: str,
        *,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        embed: Optional[str] = None,
    ) -> list[dict]:
        ...

    def insert(self, table: str, values: dict) -> dict:
        ...

    def update(self, table: str, filters: dict, values: dict) -> list[dict]:
        ...

    def delete(self, table: str, filters: dict) -> None:
        ...

    def upsert(self, table: str, values: dict, *, on_conflict: str) -> dict:
        ...


@dataclass
class Note:
    id: str
    user_id: str
    title: str
    question: str
    standard_answer: Optional[str] = None
    key_points: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Note":
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            title=row["title"],
            question=row["question"],
            standard_answer=row.get("standard_answer"),
            key_points=row.get("key_points"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Attempt:
    id: str
    note_id: str
    attempt_number: int
    answer_content: str
    is_correct: bool = False
    correction: Optional[str] = None
    error_content: Optional[str] = None
    usecase: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Attempt":
        return cls(
            id=str(row["id"]),
            note_id=str(row["note_id"]),
            attempt_number=int(row["attempt_number"]),
            answer_content=row["answer_content"],
            is_correct=bool(row.get("is_correct")),
            correction=row.get("correction"),
            error_content=row.get("error_content"),
            usecase=row.get("usecase"),
            created_at=row.get("created_at"),
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class NoteWithAttempts(Note):
    """A note plus its attempts, in the order the backend returned them."""

    attempts: List[Attempt] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "NoteWithAttempts":
        note = Note.from_row(row)
        return cls(
            **asdict(note),
            attempts=[Attempt.from_row(a) for a in row.get(ATTEMPTS_TABLE) or []],
        )


@dataclass
class UserSettings:
    id: str
    user_id: str
    supabase_url: str
    supabase_anon_key: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "UserSettings":
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            supabase_url=row["supabase_url"],
            supabase_anon_key=row["supabase_anon_key"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def as_dict(self) -> dict:
        return asdict(self)


# Column defaults applied by the database server (gen_random_uuid(), now()).
_SERVER_DEFAULTS: Dict[str, tuple[str, ...]] = {
    USER_SETTINGS_TABLE: ("id", "created_at", "updated_at"),
    NOTES_TABLE: ("id", "created_at", "updated_at"),
    ATTEMPTS_TABLE: ("id", "created_at"),
}

_UNIQUE_KEYS: Dict[str, tuple[tuple[str, ...], ...]] = {
    USER_SETTINGS_TABLE: (("user_id",),),
    ATTEMPTS_TABLE: (("note_id", "attempt_number"),),
}


class InMemoryBackendClient:
    """
    In-memory backend project for development and tests.

    Mirrors the behaviour the service relies on from a real project: server
    defaults for ids and timestamps, unique keys, the attempts -> notes foreign
    key with cascade delete, and a "relation does not exist" error for tables
    that were never created.
    """

    def __init__(
        self,
        tables: Iterable[str] = PERSONAL_TABLES,
        *,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.clock = clock
        self.tables: Dict[str, Dict[str, dict]] = {name: {} for name in tables}

    def create_tables(self, *names: str) -> None:
        for name in names or PERSONAL_TABLES:
            self.tables.setdefault(name, {})

    def reset(self) -> None:
        """Clear all stored rows (useful in tests)."""
        for rows in self.tables.values():
            rows.clear()

    def _rows(self, table: str) -> Dict[str, dict]:
        if table not in self.tables:
            raise missing_table(table)
        return self.tables[table]

    @staticmethod
    def _matches(row: dict, filters: Optional[dict]) -> bool:
        return all(str(row.get(k)) == str(v) for k, v in (filters or {}).items())

    def _check_constraints(self, table: str, row: dict) -> None:
        rows = self._rows(table)
        for columns in _UNIQUE_KEYS.get(table, ()):
            for other in rows.values():
                if other["id"] == row["id"]:
                    continue
                if all(other.get(c) == row.get(c) for c in columns):
                    raise BackendError(
                        ErrorKind.BACKEND,
                        f'duplicate key value violates unique constraint on {table} ({", ".join(columns)})',
                        code=UNIQUE_VIOLATION,
                    )
        if table == ATTEMPTS_TABLE:
            if str(row.get("note_id")) not in self._rows(NOTES_TABLE):
                raise BackendError(
                    ErrorKind.BACKEND,
                    'insert or update on table "attempts" violates foreign key constraint',
                    code=FOREIGN_KEY_VIOLATION,
                )

    def select(
        self,
        table: str,
        *,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        embed: Optional[str] = None,
    ) -> list[dict]:
        rows = [dict(r) for r in self._rows(table).values() if self._matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if embed:
            fk = EMBEDDED_RELATIONS[(table, embed)]
            children = list(self._rows(embed).values())
            for row in rows:
                row[embed] = [dict(c) for c in children if c.get(fk) == row["id"]]
        return rows

    def insert(self, table: str, values: dict) -> dict:
        rows = self._rows(table)
        row = dict(values)
        now = self.clock()
        for column in _SERVER_DEFAULTS.get(table, ()):
            if row.get(column) is None:
                row[column] = uuid.uuid4().hex if column == "id" else now
        if table == ATTEMPTS_TABLE:
            row.setdefault("is_correct", False)
        self._check_constraints(table, row)
        rows[row["id"]] = row
        return dict(row)

    def update(self, table: str, filters: dict, values: dict) -> list[dict]:
        rows = self._rows(table)
        updated = []
        for row_id, row in list(rows.items()):
            if not self._matches(row, filters):
                continue
            candidate = {**row, **values}
            self._check_constraints(table, candidate)
            rows[row_id] = candidate
            updated.append(dict(candidate))
        return updated

    def delete(self, table: str, filters: dict) -> None:
        rows = self._rows(table)
        doomed = [row_id for row_id, row in rows.items() if self._matches(row, filters)]
        for row_id in doomed:
            del rows[row_id]
        for (parent, child), fk in EMBEDDED_RELATIONS.items():
            if parent == table and child in self.tables:
                children = self.tables[child]
                for child_id in [
                    cid for cid, c in children.items() if c.get(fk) in doomed
                ]:
                    del children[child_id]

    def upsert(self, table: str, values: dict, *, on_conflict: str) -> dict:
        rows = self._rows(table)
        for row in rows.values():
            if row.get(on_conflict) == values.get(on_conflict):
                return self.update(table, {"id": row["id"]}, values)[0]
        return self.insert(table, values)


metadata = MetaData()

user_settings_table = Table(
    USER_SETTINGS_TABLE,
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, unique=True),
    Column("supabase_url", Text, nullable=False),
    Column("supabase_anon_key", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

notes_table = Table(
    NOTES_TABLE,
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("question", Text, nullable=False),
    Column("standard_answer", Text, nullable=True),
    Column("key_points", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

attempts_table = Table(
    ATTEMPTS_TABLE,
    metadata,
    Column("id", String, primary_key=True),
    Column(
        "note_id",
        String,
        ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("attempt_number", Integer, nullable=False),
    Column("answer_content", Text, nullable=False),
    Column("is_correct", Boolean, nullable=False, default=False),
    Column("correction", Text, nullable=True),
    Column("error_content", Text, nullable=True),
    Column("usecase", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("note_id", "attempt_number"),
)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlBackendClient:
    """
    SQLAlchemy-backed client for a backend reachable through a database URL
    (e.g. a project's direct Postgres connection string, or SQLite for tests).

    The schema is never created here; callers that own the database run the
    bootstrap script themselves (tests use `metadata.create_all`).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise BackendError(ErrorKind.CONFIGURATION, "A database URL is required")
        try:
            if database_url.startswith("sqlite") and ":memory:" in database_url:
                self.engine: Engine = create_engine(
                    database_url,
                    future=True,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                self.engine = create_engine(
                    database_url,
                    future=True,
                    pool_pre_ping=True,
                    pool_recycle=1800,
                )
        except (sa_exc.ArgumentError, sa_exc.NoSuchModuleError) as e:
            raise BackendError(ErrorKind.CONFIGURATION, str(e)) from e
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

    def _table(self, name: str) -> Table:
        try:
            return metadata.tables[name]
        except KeyError:
            raise missing_table(name) from None

    @staticmethod
    def _classify(e: sa_exc.SQLAlchemyError) -> BackendError:
        text = str(getattr(e, "orig", None) or e)
        lowered = text.lower()
        pgcode = getattr(getattr(e, "orig", None), "pgcode", None)
        if (
            pgcode == "42P01"
            or "no such table" in lowered
            or ("relation" in lowered and "does not exist" in lowered)
        ):
            return BackendError(ErrorKind.SCHEMA, text, code="42P01")
        if isinstance(e, sa_exc.IntegrityError):
            if pgcode == UNIQUE_VIOLATION or "unique" in lowered:
                return BackendError(ErrorKind.BACKEND, text, code=UNIQUE_VIOLATION)
            if pgcode is None and "foreign key" in lowered:
                pgcode = FOREIGN_KEY_VIOLATION
            return BackendError(ErrorKind.BACKEND, text, code=pgcode)
        if isinstance(e, sa_exc.OperationalError):
            return BackendError(ErrorKind.CONFIGURATION, text, code=pgcode)
        return BackendError(ErrorKind.BACKEND, text, code=pgcode)

    @staticmethod
    def _to_dict(row) -> dict:
        out = {}
        for key, value in row._mapping.items():
            out[key] = value.isoformat() if isinstance(value, datetime) else value
        return out

    @staticmethod
    def _coerce(table: Table, values: dict) -> dict:
        out = {}
        for key, value in values.items():
            if isinstance(table.c[key].type, DateTime) and isinstance(value, str):
                value = datetime.fromisoformat(value)
            out[key] = value
        return out

    @staticmethod
    def _where(stmt, table: Table, filters: Optional[dict]):
        for key, value in (filters or {}).items():
            stmt = stmt.where(table.c[key] == value)
        return stmt

    def select(
        self,
        table: str,
        *,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        embed: Optional[str] = None,
    ) -> list[dict]:
        t = self._table(table)
        stmt = self._where(select(t), t, filters)
        if order_by:
            column = t.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = [self._to_dict(r) for r in conn.execute(stmt)]
                if embed and rows:
                    child = self._table(embed)
                    fk = child.c[EMBEDDED_RELATIONS[(table, embed)]]
                    ids = [r["id"] for r in rows]
                    grouped: Dict[str, list[dict]] = {i: [] for i in ids}
                    for c in conn.execute(select(child).where(fk.in_(ids))):
                        item = self._to_dict(c)
                        grouped[item[fk.name]].append(item)
                    for row in rows:
                        row[embed] = grouped[row["id"]]
        except sa_exc.SQLAlchemyError as e:
            raise self._classify(e) from e
        return rows

    def _defaults(self, table: str) -> dict:
        now = utc_now()
        return {
            column: uuid.uuid4().hex if column == "id" else now
            for column in _SERVER_DEFAULTS.get(table, ())
        }

    def insert(self, table: str, values: dict) -> dict:
        t = self._table(table)
        row = {**self._defaults(table), **self._coerce(t, values)}
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(t).values(**row))
                stored = conn.execute(select(t).where(t.c.id == row["id"])).one()
        except sa_exc.SQLAlchemyError as e:
            raise self._classify(e) from e
        return self._to_dict(stored)

    def update(self, table: str, filters: dict, values: dict) -> list[dict]:
        t = self._table(table)
        try:
            with self.engine.begin() as conn:
                conn.execute(self._where(update(t), t, filters).values(**self._coerce(t, values)))
                rows = conn.execute(self._where(select(t), t, filters)).all()
        except sa_exc.SQLAlchemyError as e:
            raise self._classify(e) from e
        return [self._to_dict(r) for r in rows]

    def delete(self, table: str, filters: dict) -> None:
        t = self._table(table)
        try:
            with self.engine.begin() as conn:
                conn.execute(self._where(delete(t), t, filters))
        except sa_exc.SQLAlchemyError as e:
            raise self._classify(e) from e

    def upsert(self, table: str, values: dict, *, on_conflict: str) -> dict:
        t = self._table(table)
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(t.c.id).where(t.c[on_conflict] == values[on_conflict])
                ).scalar_one_or_none()
                if existing is None:
                    row = {**self._defaults(table), **self._coerce(t, values)}
                    conn.execute(insert(t).values(**row))
                    row_id = row["id"]
                else:
                    conn.execute(
                        update(t).where(t.c.id == existing).values(**self._coerce(t, values))
                    )
                    row_id = existing
                stored = conn.execute(select(t).where(t.c.id == row_id)).one()
        except sa_exc.SQLAlchemyError as e:
            raise self._classify(e) from e
        return self._to_dict(stored)
