from __future__ import annotations

import logging
import os
import time
from typing import Any

import httpx

from quickjournal.canonical_json import canonical_dumps
from quickjournal.dates import is_valid_date
from sync_boundary import (
    ROUTE_ACTION_ADD,
    ROUTE_ACTION_REGISTER,
    ROUTE_ACTION_REMOVE,
    ROUTE_ACTION_REORDER,
    ROUTE_ACTIONS,
    ROUTE_ENTRIES,
    ROUTE_FIRST_ENTRY_DATE,
    ROUTE_STRUCTURE,
    SyncError,
)


logger = logging.getLogger("quickjournal.sync")

DEFAULT_API_URL = "http://localhost:3000"
DEFAULT_TIMEOUT_S = 30.0


def api_url() -> str:
    return (os.getenv("JOURNAL_API_URL") or DEFAULT_API_URL).strip().rstrip("/")


def api_token() -> str:
    return (os.getenv("JOURNAL_API_TOKEN") or "").strip()


def api_timeout_s() -> float:
    raw = (os.getenv("JOURNAL_API_TIMEOUT_S") or "").strip()
    if not raw:
        return DEFAULT_TIMEOUT_S
    try:
        return float(raw)
    except ValueError:
        logger.warning("sync_timeout_invalid value=%s default=%s", raw, DEFAULT_TIMEOUT_S)
        return DEFAULT_TIMEOUT_S


def _error_message(res: httpx.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        return res.text or f"HTTP {res.status_code}"
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return f"HTTP {res.status_code}"


def _require_date(date: str) -> None:
    if not is_valid_date(date):
        raise SyncError("Invalid date format. Expected YYYY-MM-DD.")


class JournalApiClient:
    """Synchronization boundary over the journal HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        token = api_token() if token is None else token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or api_url(),
            timeout=api_timeout_s() if timeout is None else timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "JournalApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, params: dict | None = None, body: Any = None) -> Any:
        headers = None
        content = None
        if body is not None:
            headers = {"Content-Type": "application/json"}
            content = canonical_dumps(body).encode("utf-8")
        started = time.monotonic()
        try:
            res = await self._client.request(method, path, params=params, content=content, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("sync_request_failed method=%s path=%s error=%s", method, path, exc)
            raise SyncError(f"request failed: {exc}") from exc
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug("sync_request method=%s path=%s status=%s ms=%.1f", method, path, res.status_code, elapsed_ms)
        if res.status_code >= 400:
            raise SyncError(_error_message(res), res.status_code)
        if not res.content:
            return None
        try:
            return res.json()
        except ValueError as exc:
            raise SyncError("invalid JSON response", res.status_code) from exc

    async def fetch_structure(self, date: str) -> dict:
        _require_date(date)
        return await self._request("GET", ROUTE_STRUCTURE, params={"date": date})

    async def save_structure(self, body: dict) -> dict:
        return await self._request("POST", ROUTE_STRUCTURE, body=body)

    async def fetch_entry(self, date: str) -> dict:
        _require_date(date)
        return await self._request("GET", ROUTE_ENTRIES, params={"date": date})

    async def save_entry(self, entry: dict) -> dict:
        return await self._request("POST", ROUTE_ENTRIES, body=entry)

    async def fetch_first_entry_date(self) -> str | None:
        try:
            body = await self._request("GET", ROUTE_FIRST_ENTRY_DATE)
        except SyncError as exc:
            if exc.not_found:
                return None
            raise
        return body.get("date") if isinstance(body, dict) else None

    async def fetch_actions(self) -> list:
        body = await self._request("GET", ROUTE_ACTIONS)
        return body if isinstance(body, list) else []

    async def create_action(self, body: dict) -> dict:
        return await self._request("POST", ROUTE_ACTION_ADD, body=body)

    async def remove_action(self, action_id: str) -> dict:
        return await self._request("POST", ROUTE_ACTION_REMOVE, body={"id": action_id})

    async def register_action(self, action_id: str, value: Any = None) -> dict:
        body: dict = {"id": action_id}
        if value is not None:
            body["value"] = value
        return await self._request("POST", ROUTE_ACTION_REGISTER, body=body)

    async def reorder_action(self, action_id: str, order: int) -> dict:
        return await self._request("POST", ROUTE_ACTION_REORDER, body={"id": action_id, "order": order})
