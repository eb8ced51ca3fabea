"""
Bounded cache of personal-backend clients keyed by (url, key).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from studylog.db import BackendClient, InMemoryBackendClient, SqlBackendClient
from studylog.errors import BackendError, ErrorKind
from studylog.rest import REQUEST_TIMEOUT, RestBackendClient

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50

ClientFactory = Callable[[str, str], BackendClient]

PROJECT_URL_SCHEMES = ("https://", "http://")
PROJECT_URL_REQUIRED = "Enter your project URL (https://...); database URLs are not accepted"


def is_project_url(url: str) -> bool:
    return url.lower().startswith(PROJECT_URL_SCHEMES)


def create_backend_client(
    url: str,
    key: str,
    *,
    timeout: float = REQUEST_TIMEOUT,
    allow_database_urls: bool = True,
) -> BackendClient:
    """
    Open a client for a personal backend.

    Project URLs (`http(s)://`) go through the REST API. Anything else is
    handed to SQLAlchemy as a database URL, which carries its own credentials.
    The API passes `allow_database_urls=False`, so only operator tooling opens those.
    """
    if is_project_url(url):
        return RestBackendClient(url, key, timeout=timeout)
    if not allow_database_urls:
        raise BackendError(ErrorKind.CONFIGURATION, PROJECT_URL_REQUIRED)
    return SqlBackendClient(url)


def in_memory_client_factory(url: str, key: str) -> BackendClient:
    return InMemoryBackendClient()


@dataclass
class _Entry:
    client: Any
    last_used: float


class ClientCache:
    """
    Reuses one client per exact (url, key) pair.

    When full, the entry with the oldest last-used stamp is evicted before a
    new one is inserted. Lookup, insert and eviction happen under one lock.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        factory: ClientFactory = create_backend_client,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.factory = factory
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(url: str, key: str) -> str:
        return f"{url}::{key}"

    def get(self, url: str, key: str) -> BackendClient:
        cache_key = self.cache_key(url, key)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is not None:
                entry.last_used = self.clock()
                return entry.client

            client = self.factory(url, key)
            if len(self._entries) >= self.capacity:
                self._evict_oldest()
            self._entries[cache_key] = _Entry(client=client, last_used=self.clock())
            logger.info("Opened personal backend client for %s", url)
            return client

    def _evict_oldest(self) -> None:
        oldest_key: Optional[str] = None
        oldest: Optional[float] = None
        for cache_key, entry in self._entries.items():
            if oldest is None or entry.last_used < oldest:
                oldest_key, oldest = cache_key, entry.last_used
        if oldest_key is not None:
            del self._entries[oldest_key]

    def discard(self, url: str, key: str) -> bool:
        with self._lock:
            return self._entries.pop(self.cache_key(url, key), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, pair: tuple[str, str]) -> bool:
        url, key = pair
        with self._lock:
            return self.cache_key(url, key) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
