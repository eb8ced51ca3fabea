"""
Shared identity client: sign-in against the shared project and storage of
each identity's personal-backend credentials (`user_settings`).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol
from urllib.parse import urlencode

import requests

from studylog.db import (
    SHARED_TABLES,
    USER_SETTINGS_TABLE,
    BackendClient,
    InMemoryBackendClient,
    UserSettings,
    utc_now_iso,
)
from studylog.errors import BackendError, ErrorKind
from studylog.rest import REQUEST_TIMEOUT, RestBackendClient, send

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = ("google", "github")


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False, compare=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    identity: Identity
    refresh_token: Optional[str] = field(default=None, repr=False)


class IdentityClient(Protocol):
    """Operations the service needs from the shared project."""

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    def sign_up(self, email: str, password: str) -> Optional[AuthSession]:
        ...

    def oauth_url(self, provider: str, redirect_to: Optional[str] = None) -> str:
        ...

    def get_identity(self, access_token: str) -> Optional[Identity]:
        ...

    def sign_out(self, access_token: str) -> None:
        ...

    def settings_client(self, identity: Identity) -> BackendClient:
        ...


def load_user_settings(client: BackendClient, user_id: str) -> Optional[UserSettings]:
    rows = client.select(USER_SETTINGS_TABLE, filters={"user_id": user_id}, limit=1)
    if not rows:
        return None
    return UserSettings.from_row(rows[0])


def save_user_settings(
    client: BackendClient, user_id: str, url: str, key: str
) -> UserSettings:
    """Create or overwrite the single settings row for `user_id`."""
    row = client.upsert(
        USER_SETTINGS_TABLE,
        {
            "user_id": user_id,
            "supabase_url": url,
            "supabase_anon_key": key,
            "updated_at": utc_now_iso(),
        },
        on_conflict="user_id",
    )
    return UserSettings.from_row(row)


def _check_provider(provider: str) -> None:
    if provider not in OAUTH_PROVIDERS:
        raise BackendError(
            ErrorKind.CONFIGURATION, f"Unsupported OAuth provider: {provider}"
        )


class InMemoryIdentityClient:
    """Shared project double: password accounts, opaque tokens, settings table."""

    def __init__(self, base_url: str = "https://shared.example.test"):
        self.base_url = base_url
        self.users: Dict[str, tuple[Identity, str]] = {}
        self.tokens: Dict[str, Identity] = {}
        self.settings_table = InMemoryBackendClient(SHARED_TABLES)

    def add_user(self, email: str, password: str, user_id: Optional[str] = None) -> Identity:
        identity = Identity(id=user_id or uuid.uuid4().hex, email=email)
        self.users[email] = (identity, password)
        return identity

    def issue_token(self, identity: Identity) -> str:
        token = uuid.uuid4().hex
        self.tokens[token] = identity
        return token

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        entry = self.users.get(email)
        if entry is None or entry[1] != password:
            raise BackendError(ErrorKind.CONFIGURATION, "Invalid login credentials")
        identity = entry[0]
        token = self.issue_token(identity)
        return AuthSession(
            access_token=token,
            identity=Identity(**identity.as_dict(), access_token=token),
        )

    def sign_up(self, email: str, password: str) -> Optional[AuthSession]:
        if email in self.users:
            raise BackendError(ErrorKind.BACKEND, "User already registered")
        self.add_user(email, password)
        return self.sign_in_with_password(email, password)

    def oauth_url(self, provider: str, redirect_to: Optional[str] = None) -> str:
        _check_provider(provider)
        params = {"provider": provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    def get_identity(self, access_token: str) -> Optional[Identity]:
        identity = self.tokens.get(access_token)
        if identity is None:
            return None
        return Identity(**identity.as_dict(), access_token=access_token)

    def sign_out(self, access_token: str) -> None:
        self.tokens.pop(access_token, None)

    def settings_client(self, identity: Identity) -> BackendClient:
        return self.settings_table

    def reset(self) -> None:
        self.users.clear()
        self.tokens.clear()
        self.settings_table.reset()


class SupabaseIdentityClient:
    """Shared project client over the GoTrue auth API and PostgREST."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not url or not anon_key:
            raise BackendError(
                ErrorKind.CONFIGURATION,
                "SHARED_BACKEND_URL and SHARED_BACKEND_ANON_KEY are required",
            )
        self.url = url.rstrip("/")
        self.auth_url = f"{self.url}/auth/v1"
        self.anon_key = anon_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {"apikey": anon_key, "Content-Type": "application/json"}
        )

    def _auth(self, method: str, path: str, *, token: Optional[str] = None, **kwargs):
        headers = {"Authorization": f"Bearer {token or self.anon_key}"}
        return send(
            self.session,
            method,
            f"{self.auth_url}/{path}",
            timeout=self.timeout,
            headers=headers,
            **kwargs,
        )

    @staticmethod
    def _identity(user: dict, access_token: Optional[str]) -> Identity:
        meta = user.get("user_metadata") or {}
        return Identity(
            id=user["id"],
            email=user.get("email") or "",
            display_name=meta.get("full_name") or meta.get("name"),
            avatar_url=meta.get("avatar_url"),
            access_token=access_token,
        )

    def _session(self, payload: dict) -> AuthSession:
        token = payload["access_token"]
        return AuthSession(
            access_token=token,
            identity=self._identity(payload["user"], token),
            refresh_token=payload.get("refresh_token"),
        )

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        payload = self._auth(
            "POST",
            "token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        ).json()
        return self._session(payload)

    def sign_up(self, email: str, password: str) -> Optional[AuthSession]:
        payload = self._auth(
            "POST", "signup", json={"email": email, "password": password}
        ).json()
        # With email confirmation enabled no session is issued yet.
        if "access_token" not in payload:
            logger.info("Sign-up for %s awaits email confirmation", email)
            return None
        return self._session(payload)

    def oauth_url(self, provider: str, redirect_to: Optional[str] = None) -> str:
        _check_provider(provider)
        params = {"provider": provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return f"{self.auth_url}/authorize?{urlencode(params)}"

    def get_identity(self, access_token: str) -> Optional[Identity]:
        try:
            user = self._auth("GET", "user", token=access_token).json()
        except BackendError as e:
            if e.status in (401, 403):
                return None
            raise
        return self._identity(user, access_token)

    def sign_out(self, access_token: str) -> None:
        self._auth("POST", "logout", token=access_token)

    def settings_client(self, identity: Identity) -> BackendClient:
        return RestBackendClient(
            self.url,
            self.anon_key,
            access_token=identity.access_token,
            timeout=self.timeout,
        )
