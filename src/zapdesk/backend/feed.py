"""Push path: change notifications keyed by table."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import anyio
import httpx
import msgspec

from ..errors import DataUnavailable
from ..logging import get_logger
from .api_models import ChangeEventRow

logger = get_logger(__name__)

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "HttpChangeFeed",
    "MemoryChangeFeed",
]


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    event: str
    organization_id: str | None = None
    record: dict[str, Any] = field(default_factory=dict)


class ChangeFeed(Protocol):
    def __aiter__(self) -> AsyncIterator[ChangeEvent]: ...


class MemoryChangeFeed:
    def __init__(self, max_buffer: int = 100) -> None:
        self._send, self._receive = anyio.create_memory_object_stream(
            max_buffer_size=max_buffer
        )

    async def publish(self, event: ChangeEvent) -> None:
        await self._send.send(event)

    async def close(self) -> None:
        await self._send.aclose()

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        async with self._receive:
            async for event in self._receive:
                yield event


class HttpChangeFeed:
    """Streams newline-delimited JSON change events over a long-lived GET."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: dict[str, str],
        table: str,
        organization_id: str,
    ) -> None:
        self._client = client
        self._url = url
        self._headers = headers
        self._table = table
        self._organization_id = organization_id

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        params = {"table": self._table, "organization_id": self._organization_id}
        try:
            async with self._client.stream(
                "GET", self._url, params=params, headers=self._headers, timeout=None
            ) as resp:
                if resp.status_code >= 400:
                    logger.error(
                        "feed.http_error", table=self._table, status=resp.status_code
                    )
                    raise DataUnavailable(
                        f"subscribe {self._table}", f"HTTP {resp.status_code}"
                    )
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        row = msgspec.json.decode(line, type=ChangeEventRow)
                    except msgspec.DecodeError:
                        logger.debug("feed.invalid_line", table=self._table, line=line)
                        continue
                    yield ChangeEvent(
                        table=row.table,
                        event=row.event,
                        organization_id=row.organization_id,
                        record=row.record,
                    )
        except httpx.HTTPError as e:
            logger.error(
                "feed.network_error",
                table=self._table,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            raise DataUnavailable(f"subscribe {self._table}", str(e)) from e
