"""
PostgREST client for Supabase-style backend projects.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from studylog.errors import (
    INVALID_TEXT_REPRESENTATION,
    NO_ROWS,
    SCHEMA_CACHE_MISS,
    UNDEFINED_TABLE,
    BackendError,
    ErrorKind,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds

_CONFIGURATION_FAILURES = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
    requests.exceptions.ConnectionError,
)


def error_message(payload: object, fallback: str) -> str:
    """Pull the human-readable message out of a PostgREST or GoTrue error body."""
    if isinstance(payload, dict):
        for key in ("message", "msg", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def classify_response(response: requests.Response) -> BackendError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    code = payload.get("code") if isinstance(payload, dict) else None
    code = str(code) if code is not None else None
    status = response.status_code
    message = error_message(payload, f"HTTP {status}: {response.reason}")

    if code in (UNDEFINED_TABLE, SCHEMA_CACHE_MISS):
        return BackendError(ErrorKind.SCHEMA, message, code=code, status=status)
    if code == NO_ROWS:
        return BackendError(ErrorKind.NOT_FOUND, message, code=code, status=status)
    if status in (401, 403):
        return BackendError(ErrorKind.CONFIGURATION, message, code=code, status=status)
    if status == 404 and payload is None:
        # Not a PostgREST endpoint at all.
        return BackendError(ErrorKind.CONFIGURATION, message, code=code, status=status)
    return BackendError(ErrorKind.BACKEND, message, code=code, status=status)


def send(
    session: requests.Session,
    method: str,
    url: str,
    *,
    timeout: float,
    **kwargs,
) -> requests.Response:
    """Issue one request, mapping transport and HTTP failures to BackendError."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except _CONFIGURATION_FAILURES as e:
        raise BackendError(ErrorKind.CONFIGURATION, str(e)) from e
    except requests.exceptions.RequestException as e:
        raise BackendError(ErrorKind.BACKEND, str(e)) from e
    if response.status_code >= 400:
        error = classify_response(response)
        logger.warning("%s %s failed: %r", method, url, error)
        raise error
    return response


class RestBackendClient:
    """
    `BackendClient` over a project's REST endpoint (`{url}/rest/v1`).

    Requests authenticate with the project key; `access_token` replaces the
    bearer so row-level security sees the signed-in user.
    """

    def __init__(
        self,
        url: str,
        key: str,
        *,
        access_token: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.rest_url = f"{self.url}/rest/v1"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": key,
                "Authorization": f"Bearer {access_token or key}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, table: str, **kwargs) -> requests.Response:
        return send(
            self.session,
            method,
            f"{self.rest_url}/{table}",
            timeout=self.timeout,
            **kwargs,
        )

    def _filtered(self, method: str, table: str, filters: Optional[dict], **kwargs):
        """Run a filtered request; `None` when a filter value is malformed for its column."""
        try:
            return self._request(method, table, **kwargs)
        except BackendError as e:
            # e.g. a non-UUID id: no row can match it.
            if filters and e.code == INVALID_TEXT_REPRESENTATION:
                return None
            raise

    @staticmethod
    def _filter_params(filters: Optional[dict]) -> dict:
        params = {}
        for key, value in (filters or {}).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            params[key] = f"eq.{value}"
        return params

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
        params = {"select": f"*,{embed}(*)" if embed else "*"}
        params.update(self._filter_params(filters))
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        response = self._filtered("GET", table, filters, params=params)
        return [] if response is None else response.json()

    def insert(self, table: str, values: dict) -> dict:
        rows = self._request(
            "POST",
            table,
            json=values,
            headers={"Prefer": "return=representation"},
        ).json()
        return rows[0]

    def update(self, table: str, filters: dict, values: dict) -> list[dict]:
        response = self._filtered(
            "PATCH",
            table,
            filters,
            params=self._filter_params(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return [] if response is None else response.json()

    def delete(self, table: str, filters: dict) -> None:
        self._filtered("DELETE", table, filters, params=self._filter_params(filters))

    def upsert(self, table: str, values: dict, *, on_conflict: str) -> dict:
        rows = self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=values,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        ).json()
        return rows[0]
