"""Pull and push paths feeding one idempotent refresh per view."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from typing import Any

import anyio

from .backend import api
from .backend.client import Backend
from .backend.feed import ChangeFeed
from .config import DEFAULT_MESSAGE_POLL_INTERVAL_S
from .errors import DataUnavailable, MessagingError
from .logging import get_logger
from .model import Conversation, DeliveryStatus, Message

logger = get_logger(__name__)

__all__ = [
    "MessageStoreSync",
    "RefreshLoop",
    "watch_feed",
]


class RefreshLoop:
    """Runs ``refresh`` every ``interval_s`` or as soon as it is invalidated."""

    def __init__(
        self,
        refresh: Callable[[], Awaitable[Any]],
        *,
        interval_s: float,
        label: str,
        on_error: Callable[[MessagingError], None] | None = None,
    ) -> None:
        self._refresh = refresh
        self._interval_s = interval_s
        self._label = label
        self._on_error = on_error
        self._wake = anyio.Event()

    def invalidate(self) -> None:
        self._wake.set()

    async def run(self) -> None:
        while True:
            self._wake = anyio.Event()
            try:
                await self._refresh()
            except MessagingError as exc:
                logger.warning(
                    "sync.refresh_failed",
                    view=self._label,
                    error=exc.detail,
                    error_type=exc.__class__.__name__,
                )
                if self._on_error is not None:
                    self._on_error(exc)
            with anyio.move_on_after(self._interval_s):
                await self._wake.wait()


async def watch_feed(
    feed: ChangeFeed,
    *,
    table: str,
    organization_id: str,
    invalidate: Iterable[Callable[[], None]],
) -> None:
    """Turn insert notifications into invalidations; no incremental patching."""
    targets = list(invalidate)
    async for event in feed:
        if event.table != table or event.event.upper() != "INSERT":
            continue
        if event.organization_id is not None and event.organization_id != organization_id:
            continue
        logger.debug("sync.push_invalidate", table=table)
        for target in targets:
            target()


class MessageStoreSync:
    def __init__(
        self,
        backend: Backend,
        *,
        poll_interval_s: float = DEFAULT_MESSAGE_POLL_INTERVAL_S,
        on_change: Callable[[list[Message]], None] | None = None,
        on_error: Callable[[MessagingError], None] | None = None,
    ) -> None:
        self._backend = backend
        self._on_change = on_change
        self._active: Conversation | None = None
        self._generation = 0
        self._read_marked = False
        self._messages: list[Message] = []
        self._seen: dict[str, Message] = {}
        self._local: dict[str, Message] = {}
        self.loop = RefreshLoop(
            self.refresh,
            interval_s=poll_interval_s,
            label="messages",
            on_error=on_error,
        )

    @property
    def active(self) -> Conversation | None:
        return self._active

    def activate(self, conversation: Conversation) -> None:
        if self._active is not None and self._active.id == conversation.id:
            return
        self._active = conversation
        self._generation += 1
        self._read_marked = False
        self._messages = []
        self._seen = {}
        self._local = {}
        self.loop.invalidate()

    def invalidate(self) -> None:
        self.loop.invalidate()

    def snapshot(self) -> list[Message]:
        server_ids = {message.id for message in self._messages}
        local = [m for m in self._local.values() if m.id not in server_ids]
        return [*self._messages, *local]

    def _emit(self) -> None:
        if self._on_change is not None:
            self._on_change(self.snapshot())

    async def refresh(self) -> list[Message]:
        conversation = self._active
        if conversation is None:
            return []
        generation = self._generation

        if not self._read_marked and conversation.unread_count > 0:
            self._read_marked = True
            try:
                await api.mark_read(self._backend, conversation.id)
            except DataUnavailable:
                if generation == self._generation:
                    self._read_marked = False
                raise
            if generation == self._generation and self._active is not None:
                self._active = replace(self._active, unread_count=0)

        messages = await api.fetch_messages(self._backend, conversation.id)
        if generation != self._generation:
            logger.debug("sync.stale_result_dropped", conversation_id=conversation.id)
            return self.snapshot()
        self._apply(messages)
        return self.snapshot()

    def _apply(self, fetched: list[Message]) -> None:
        merged: list[Message] = []
        for message in fetched:
            previous = self._seen.get(message.id)
            if previous is not None:
                kept = previous.with_status(
                    message.status, error_detail=message.error_detail
                )
                if kept.status is not message.status:
                    message = replace(
                        message, status=kept.status, error_detail=kept.error_detail
                    )
            self._seen[message.id] = message
            merged.append(message)
        self._messages = merged
        # resolved optimistic copies are superseded by the server list
        self._local = {
            key: local
            for key, local in self._local.items()
            if local.status in (DeliveryStatus.SENDING, DeliveryStatus.FAILED)
        }
        self._emit()

    def add_local(self, message: Message) -> None:
        self._local[message.id] = message
        self._emit()

    def fail_local(self, local_id: str, detail: str) -> Message | None:
        local = self._local.get(local_id)
        if local is None:
            return None
        failed = local.with_status(DeliveryStatus.FAILED, error_detail=detail)
        self._local[local_id] = failed
        self._emit()
        return failed

    def resolve_local(self, local_id: str, server_message: Message | None) -> None:
        local = self._local.get(local_id)
        if local is None:
            return
        if server_message is None:
            self._local[local_id] = local.with_status(DeliveryStatus.SENT)
        else:
            self._local.pop(local_id)
            active = self._active
            if (
                active is not None
                and server_message.conversation_id == active.id
                and server_message.id not in self._seen
            ):
                self._seen[server_message.id] = server_message
                self._messages.append(server_message)
        self._emit()

    def discard_local(self, local_id: str) -> None:
        if self._local.pop(local_id, None) is not None:
            self._emit()
