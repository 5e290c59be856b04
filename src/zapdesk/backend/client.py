from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from ..errors import DataUnavailable
from ..logging import get_logger
from .feed import HttpChangeFeed

logger = get_logger(__name__)

__all__ = [
    "Backend",
    "BackendCallError",
    "BackendClient",
]


class BackendCallError(RuntimeError):
    """Transport-level failure of a remote function call."""

    def __init__(self, function: str, detail: str, status: int | None = None) -> None:
        super().__init__(f"{function}: {detail}")
        self.function = function
        self.detail = detail
        self.status = status


class Backend(Protocol):
    async def close(self) -> None: ...

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]: ...

    async def invoke(self, function: str, body: dict[str, Any]) -> dict[str, Any]: ...


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _filter_params(filters: Mapping[str, Any] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        op = "is" if value is None else "eq"
        params[column] = f"{op}.{_literal(value)}"
    return params


class BackendClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Backend api key is empty")
        self._base = base_url.rstrip("/")
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _table_request(
        self,
        method: str,
        table: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        url = f"{self._base}/rest/v1/{table}"
        headers = dict(self._headers)
        if prefer is not None:
            headers["Prefer"] = prefer
        logger.debug("backend.request", method=method, table=table, params=params)
        try:
            resp = await self._client.request(
                method, url, params=params, json=json_data, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(
                "backend.network_error",
                table=table,
                method=method,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            raise DataUnavailable(operation, str(e) or e.__class__.__name__) from e

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "backend.http_error",
                table=table,
                method=method,
                status=resp.status_code,
                body=resp.text,
            )
            raise DataUnavailable(operation, f"HTTP {resp.status_code}") from e

        if not resp.content:
            return []
        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(
                "backend.bad_response",
                table=table,
                status=resp.status_code,
                error=str(e),
                body=resp.text,
            )
            raise DataUnavailable(operation, "invalid response body") from e

        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            logger.error("backend.invalid_payload", table=table, payload=payload)
            raise DataUnavailable(operation, "unexpected response shape")
        return [row for row in payload if isinstance(row, dict)]

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **_filter_params(filters)}
        if order is not None:
            params["order"] = (
                f"{order}.desc.nullslast" if descending else f"{order}.asc"
            )
        if limit is not None:
            params["limit"] = str(limit)
        return await self._table_request(
            "GET", table, operation=f"select {table}", params=params
        )

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._table_request(
            "POST",
            table,
            operation=f"insert {table}",
            json_data=row,
            prefer="return=representation",
        )
        if not rows:
            raise DataUnavailable(f"insert {table}", "no row returned")
        return rows[0]

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("refusing to update without filters")
        return await self._table_request(
            "PATCH",
            table,
            operation=f"update {table}",
            params=_filter_params(filters),
            json_data=values,
            prefer="return=representation",
        )

    async def invoke(self, function: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base}/functions/v1/{function}"
        logger.debug("backend.invoke", function=function)
        try:
            resp = await self._client.post(url, json=body, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(
                "backend.invoke.network_error",
                function=function,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            raise BackendCallError(function, str(e) or e.__class__.__name__) from e

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "backend.invoke.http_error",
                function=function,
                status=resp.status_code,
                body=resp.text,
            )
            raise BackendCallError(
                function, f"HTTP {resp.status_code}", status=resp.status_code
            ) from e

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(
                "backend.invoke.bad_response",
                function=function,
                status=resp.status_code,
                body=resp.text,
            )
            raise BackendCallError(function, "invalid response body") from e

        if not isinstance(payload, dict):
            logger.error("backend.invoke.invalid_payload", function=function)
            raise BackendCallError(function, "unexpected response shape")
        logger.debug("backend.invoke.response", function=function, payload=payload)
        return payload

    def change_feed(self, table: str, organization_id: str) -> HttpChangeFeed:
        return HttpChangeFeed(
            self._client,
            f"{self._base}/realtime/v1/changes",
            headers=self._headers,
            table=table,
            organization_id=organization_id,
        )
