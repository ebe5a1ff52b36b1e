"""Supabase PostgREST client.

Thin async wrapper over the PostgREST HTTP API (``/rest/v1``) used for
job bookkeeping, transcripts, and audit rows. One instance owns the
process-wide connection pool and is shared by the pipeline, the
heartbeat, and the audit sink.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from transcription_worker.utils.errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class SupabaseClient:
    """Client for PostgREST operations authenticated with the service role.

    Reads configuration from environment variables:
        SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
    """

    def __init__(
        self,
        url: str | None = None,
        service_role_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_connections: int = 5,
    ) -> None:
        self.url = (url or os.environ.get("SUPABASE_URL", "")).rstrip("/")
        self.service_role_key = service_role_key or os.environ.get(
            "SUPABASE_SERVICE_ROLE_KEY", ""
        )

        if not self.url:
            raise ConfigurationError(
                "SUPABASE_URL is required", setting="SUPABASE_URL"
            )
        if not self.service_role_key:
            raise ConfigurationError(
                "SUPABASE_SERVICE_ROLE_KEY is required",
                setting="SUPABASE_SERVICE_ROLE_KEY",
            )

        self._client = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            timeout=timeout,
            limits=httpx.Limits(max_connections=max_connections),
        )

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        """Build authentication headers for PostgREST."""
        headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers=self._headers(prefer),
                **kwargs,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Supabase {operation} failed: "
                f"HTTP {exc.response.status_code}",
                operation=operation,
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Supabase {operation} failed: {exc}",
                operation=operation,
            ) from exc
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        return response.json()

    async def rpc(
        self, function: str, args: dict[str, Any] | None = None
    ) -> Any:
        """Call a Postgres function exposed through PostgREST.

        Args:
            function: SQL function name.
            args: Named function arguments.

        Returns:
            Decoded JSON result (row, list of rows, scalar, or None).

        Raises:
            StorageError: If the call fails.
        """
        response = await self._send(
            "POST", f"/rpc/{function}", operation=f"rpc:{function}", json=args or {}
        )
        return self._json(response)

    async def select(
        self, table: str, filters: dict[str, str], columns: str = "*"
    ) -> list[dict[str, Any]]:
        """Select rows matching PostgREST filters (e.g. ``{"id": "eq.1"}``).

        Raises:
            StorageError: If the request fails.
        """
        params = {"select": columns, **filters}
        response = await self._send(
            "GET", f"/{table}", operation=f"select:{table}", params=params
        )
        return self._json(response) or []

    async def update(
        self,
        table: str,
        filters: dict[str, str],
        values: dict[str, Any],
        returning: bool = False,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """Update rows matching filters.

        Args:
            table: Table name.
            filters: PostgREST filters; all must match for a row to change.
            values: Column values to set.
            returning: Ask PostgREST to return the updated rows.
            timeout: Optional per-request timeout override.

        Returns:
            Updated rows when ``returning`` is set, otherwise an empty list.

        Raises:
            StorageError: If the request fails.
        """
        prefer = "return=representation" if returning else "return=minimal"
        response = await self._send(
            "PATCH",
            f"/{table}",
            operation=f"update:{table}",
            params=filters,
            json=values,
            prefer=prefer,
            timeout=timeout,
        )
        if not returning:
            return []
        return self._json(response) or []

    async def insert(
        self,
        table: str,
        values: dict[str, Any],
        on_conflict: str | None = None,
        returning: bool = False,
    ) -> list[dict[str, Any]]:
        """Insert (or upsert on ``on_conflict``) a row.

        Raises:
            StorageError: If the request fails.
        """
        preferences = [
            "return=representation" if returning else "return=minimal"
        ]
        params: dict[str, str] | None = None
        if on_conflict:
            preferences.append("resolution=merge-duplicates")
            params = {"on_conflict": on_conflict}
        response = await self._send(
            "POST",
            f"/{table}",
            operation=f"insert:{table}",
            params=params,
            json=values,
            prefer=",".join(preferences),
        )
        if not returning:
            return []
        return self._json(response) or []
