"""
Walks a user through connecting their personal backend.

input -> testing -> create_tables | done, and create_tables -> input. The flow
only verifies that the schema exists; creating it is left to the user, who
runs `USER_DATABASE_SQL` in their project's SQL editor.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from studylog.client_cache import PROJECT_URL_REQUIRED, ClientCache, is_project_url
from studylog.db import ATTEMPTS_TABLE, NOTES_TABLE, BackendClient, UserSettings
from studylog.errors import BackendError, ErrorKind
from studylog.identity import Identity, IdentityClient, save_user_settings

logger = logging.getLogger(__name__)

USER_DATABASE_SQL = """-- Notes
create table if not exists notes (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  title text not null,
  question text not null,
  standard_answer text,
  key_points text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

-- Attempts
create table if not exists attempts (
  id uuid primary key default gen_random_uuid(),
  note_id uuid not null references notes(id) on delete cascade,
  attempt_number integer not null,
  answer_content text not null,
  is_correct boolean not null default false,
  correction text,
  error_content text,
  usecase text,
  created_at timestamptz not null default now(),
  unique (note_id, attempt_number)
);

create index if not exists attempts_note_id_idx on attempts(note_id);

-- Row level security: this project belongs to a single user
alter table notes enable row level security;
alter table attempts enable row level security;

drop policy if exists "Allow all on notes" on notes;
create policy "Allow all on notes" on notes
  for all using (true) with check (true);

drop policy if exists "Allow all on attempts" on attempts;
create policy "Allow all on attempts" on attempts
  for all using (true) with check (true);
"""

TABLES_MISSING_MESSAGE = (
    "The tables have not been created yet. Run the SQL script above in your "
    "project's SQL editor, then try again."
)


class SetupStep(str, enum.Enum):
    INPUT = "input"
    TESTING = "testing"
    CREATE_TABLES = "create_tables"
    DONE = "done"


@dataclass
class ProbeResult:
    ok: bool
    error: Optional[BackendError] = None

    @property
    def schema_missing(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.SCHEMA


def normalize_url(raw: str) -> str:
    """Add `https://` when no scheme is given and drop one trailing slash."""
    url = raw.strip()
    if "://" not in url:
        url = f"https://{url}"
    if url.endswith("/"):
        url = url[:-1]
    return url


def probe_connection(client: BackendClient) -> ProbeResult:
    """Reachability probe: a missing `notes` table still counts as reachable."""
    try:
        client.select(NOTES_TABLE, limit=1)
    except BackendError as e:
        if e.kind == ErrorKind.SCHEMA:
            return ProbeResult(ok=True)
        return ProbeResult(ok=False, error=e)
    return ProbeResult(ok=True)


def check_schema(client: BackendClient) -> ProbeResult:
    try:
        for table in (NOTES_TABLE, ATTEMPTS_TABLE):
            client.select(table, limit=1)
    except BackendError as e:
        return ProbeResult(ok=False, error=e)
    return ProbeResult(ok=True)


class SetupFlow:
    """
    One user's pass through the setup screens.

    `url`/`key` hold the normalized credentials once testing started, so the
    create_tables step can re-check and save them without new input.
    """

    def __init__(
        self,
        identity_client: IdentityClient,
        identity: Identity,
        cache: ClientCache,
        *,
        step: SetupStep = SetupStep.INPUT,
        url: str = "",
        key: str = "",
    ):
        self.identity_client = identity_client
        self.identity = identity
        self.cache = cache
        self.step = step
        self.url = url
        self.key = key
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.settings: Optional[UserSettings] = None

    @property
    def sql(self) -> Optional[str]:
        return USER_DATABASE_SQL if self.step == SetupStep.CREATE_TABLES else None

    def _fail(self, kind: ErrorKind, message: str, step: SetupStep) -> SetupStep:
        self.error = message
        self.error_kind = kind
        self.step = step
        logger.info("Setup for %s stopped at %s: %s", self.identity.id, step.value, message)
        return step

    def _save(self, step_on_failure: SetupStep) -> SetupStep:
        try:
            self.settings = save_user_settings(
                self.identity_client.settings_client(self.identity),
                self.identity.id,
                self.url,
                self.key,
            )
        except BackendError as e:
            return self._fail(e.kind, f"Saving settings failed: {e.message}", step_on_failure)
        self.step = SetupStep.DONE
        logger.info("Personal backend saved for %s", self.identity.id)
        return self.step

    def submit(self, raw_url: str, raw_key: str) -> SetupStep:
        """Test the given credentials and save them when the schema exists."""
        self.error = None
        self.error_kind = None
        if not raw_url.strip() or not raw_key.strip():
            return self._fail(
                ErrorKind.CONFIGURATION,
                "Please enter both the project URL and the anon key",
                SetupStep.INPUT,
            )

        self.url = normalize_url(raw_url)
        self.key = raw_key.strip()
        if not is_project_url(self.url):
            return self._fail(ErrorKind.CONFIGURATION, PROJECT_URL_REQUIRED, SetupStep.INPUT)
        self.step = SetupStep.TESTING

        try:
            client = self.cache.get(self.url, self.key)
        except BackendError as e:
            return self._fail(e.kind, f"Connection failed: {e.message}", SetupStep.INPUT)

        probe = probe_connection(client)
        if not probe.ok:
            return self._fail(
                probe.error.kind, f"Connection failed: {probe.error.message}", SetupStep.INPUT
            )

        schema = check_schema(client)
        if schema.schema_missing:
            self.step = SetupStep.CREATE_TABLES
            logger.info("Personal backend for %s is missing its tables", self.identity.id)
            return self.step
        if not schema.ok:
            return self._fail(
                schema.error.kind,
                f"Database check failed: {schema.error.message}",
                SetupStep.INPUT,
            )
        return self._save(SetupStep.INPUT)

    def confirm_tables_created(self) -> SetupStep:
        """Re-check the schema after the user ran the bootstrap script."""
        if self.step != SetupStep.CREATE_TABLES:
            raise ValueError(f"Cannot confirm tables from step {self.step.value}")
        self.error = None
        self.error_kind = None
        if not is_project_url(self.url):
            return self._fail(ErrorKind.CONFIGURATION, PROJECT_URL_REQUIRED, SetupStep.INPUT)
        try:
            client = self.cache.get(self.url, self.key)
        except BackendError as e:
            return self._fail(e.kind, e.message, SetupStep.CREATE_TABLES)
        schema = check_schema(client)
        if not schema.ok:
            if schema.schema_missing:
                return self._fail(
                    ErrorKind.SCHEMA, TABLES_MISSING_MESSAGE, SetupStep.CREATE_TABLES
                )
            return self._fail(
                schema.error.kind, schema.error.message, SetupStep.CREATE_TABLES
            )
        return self._save(SetupStep.CREATE_TABLES)

    def back_to_input(self) -> SetupStep:
        self.error = None
        self.error_kind = None
        self.step = SetupStep.INPUT
        return self.step
