"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from functools import partial
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from studylog.client_cache import (
    ClientCache,
    create_backend_client,
    in_memory_client_factory,
)
from studylog.config import get_settings
from studylog.connection import Connected, ConnectionManager
from studylog.identity import (
    Identity,
    IdentityClient,
    InMemoryIdentityClient,
    SupabaseIdentityClient,
)

_identity_client: IdentityClient | None = None
_client_cache: ClientCache | None = None

bearer = HTTPBearer(auto_error=False)


def get_identity_client() -> IdentityClient:
    """
    Return the singleton shared-project client, created on first use.
    """
    global _identity_client
    if _identity_client is not None:
        return _identity_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.shared_backend_url:
        _identity_client = InMemoryIdentityClient()
    else:
        _identity_client = SupabaseIdentityClient(
            settings.shared_backend_url,
            settings.shared_backend_anon_key or "",
            timeout=settings.request_timeout_seconds,
        )
    return _identity_client


def get_client_cache() -> ClientCache:
    global _client_cache
    if _client_cache is not None:
        return _client_cache

    settings = get_settings()
    if settings.use_in_memory_backends:
        factory = in_memory_client_factory
    else:
        factory = partial(
            create_backend_client,
            timeout=settings.request_timeout_seconds,
            allow_database_urls=False,
        )
    _client_cache = ClientCache(settings.client_cache_capacity, factory=factory)
    return _client_cache


def reset_dependencies() -> None:
    """Drop the process-wide clients (tests, shutdown)."""
    global _identity_client, _client_cache
    if _client_cache is not None:
        _client_cache.clear()
    _identity_client = None
    _client_cache = None


def get_access_token(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> str:
    if creds is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in"
        )
    return creds.credentials


def get_current_identity(
    token: str = Depends(get_access_token),
    identity_client: IdentityClient = Depends(get_identity_client),
) -> Identity:
    identity = identity_client.get_identity(token)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return identity


def get_connection(
    identity: Identity = Depends(get_current_identity),
    identity_client: IdentityClient = Depends(get_identity_client),
    cache: ClientCache = Depends(get_client_cache),
) -> ConnectionManager:
    manager = ConnectionManager(identity_client, cache)
    manager.set_identity(identity)
    return manager


def require_connected(
    manager: ConnectionManager = Depends(get_connection),
) -> Connected:
    state = manager.state
    if not isinstance(state, Connected):
        detail = {"status": state.status}
        message = getattr(state, "message", None)
        if message:
            detail["message"] = message
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    return state
