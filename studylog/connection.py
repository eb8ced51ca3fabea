"""
Connection status for the signed-in identity's personal backend.

The state is one of four variants: `Loading`, `NeedsSetup`, `Connected` and
`Failed` (status "error"). Only `Connected` carries a client and settings,
only `Failed` carries a message.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

from studylog.client_cache import PROJECT_URL_REQUIRED, ClientCache, is_project_url
from studylog.db import UserSettings
from studylog.errors import BackendError, ErrorKind
from studylog.identity import Identity, IdentityClient, load_user_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Loading:
    status: ClassVar[str] = "loading"


@dataclass(frozen=True)
class NeedsSetup:
    status: ClassVar[str] = "needs_setup"


@dataclass(frozen=True)
class Connected:
    status: ClassVar[str] = "connected"
    client: Any = field(compare=False)
    settings: UserSettings


@dataclass(frozen=True)
class Failed:
    status: ClassVar[str] = "error"
    message: str
    error: Optional[BaseException] = field(default=None, compare=False)


ConnectionState = Union[Loading, NeedsSetup, Connected, Failed]


class ConnectionManager:
    """
    Resolves which personal backend the current identity uses.

    `set_identity` is called on sign-in/out, `refresh` after setup completes.
    Resolutions are serialized, so concurrent refreshes converge on the state
    the stored settings dictate.
    """

    def __init__(self, identity_client: IdentityClient, cache: ClientCache):
        self.identity_client = identity_client
        self.cache = cache
        self._identity: Optional[Identity] = None
        self._state: ConnectionState = Loading()
        self._lock = threading.Lock()

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._identity.id if self._identity else None

    def set_identity(self, identity: Optional[Identity]) -> ConnectionState:
        self._identity = identity
        return self.refresh()

    def refresh(self) -> ConnectionState:
        with self._lock:
            self._state = Loading()
            self._state = self._resolve()
            return self._state

    def _resolve(self) -> ConnectionState:
        identity = self._identity
        if identity is None:
            return Loading()
        try:
            settings = load_user_settings(
                self.identity_client.settings_client(identity), identity.id
            )
        except BackendError as e:
            logger.warning("Failed to load user settings for %s: %s", identity.id, e)
            return Failed(message=e.message or "Failed to load settings", error=e)
        if settings is None:
            logger.info("No personal backend configured for %s", identity.id)
            return NeedsSetup()
        if not is_project_url(settings.supabase_url):
            logger.warning("Stored backend URL for %s is not a project URL", identity.id)
            error = BackendError(ErrorKind.CONFIGURATION, PROJECT_URL_REQUIRED)
            return Failed(message=error.message, error=error)
        try:
            client = self.cache.get(settings.supabase_url, settings.supabase_anon_key)
        except BackendError as e:
            logger.warning("Failed to open personal backend for %s: %s", identity.id, e)
            return Failed(message=e.message, error=e)
        return Connected(client=client, settings=settings)

    def reset(self) -> None:
        """Forget the identity and drop its cached client (sign-out)."""
        with self._lock:
            state = self._state
            if isinstance(state, Connected):
                self.cache.discard(
                    state.settings.supabase_url, state.settings.supabase_anon_key
                )
            self._identity = None
            self._state = Loading()
