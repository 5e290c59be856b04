from __future__ import annotations

import contextlib
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

import anyio
import httpx

from .admission import SEND_COOLDOWN_MS, AdmissionController, Admitted, monotonic_ms
from .backend.client import Backend
from .backend.feed import ChangeFeed
from .channels import ChannelRegistry
from .config import (
    DEFAULT_CONVERSATION_POLL_INTERVAL_S,
    DEFAULT_MESSAGE_POLL_INTERVAL_S,
    DEFAULT_PROBE_TIMEOUT_S,
    ZapdeskSettings,
)
from .conversations import (
    ConversationResolver,
    filter_conversations,
    normalize_phone,
    select_active,
    sort_by_activity,
)
from .dispatch import SendDispatcher, SendOutcome
from .errors import (
    InvalidAddress,
    MessagingError,
    ScopeViolation,
    TargetUnavailable,
    UploadFailed,
)
from .logging import get_logger
from .media import (
    AudioRecorder,
    CapturedAudio,
    MediaKind,
    MediaTransfer,
    MediaTransferPipeline,
    decode_audio_payload,
    validate_document,
    validate_image,
)
from .model import ChannelInstance, Conversation, Message
from .sync import MessageStoreSync, RefreshLoop, watch_feed

logger = get_logger(__name__)

__all__ = [
    "ChatSession",
    "Notice",
]

MESSAGES_TABLE = "messages"


@dataclass(frozen=True, slots=True)
class Notice:
    title: str
    detail: str
    level: Literal["info", "error"] = "error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    """One operator's messaging session: a shared send gate plus the active thread."""

    def __init__(
        self,
        backend: Backend,
        *,
        organization_id: str,
        user_id: str,
        cooldown_ms: float = SEND_COOLDOWN_MS,
        probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
        message_poll_interval_s: float = DEFAULT_MESSAGE_POLL_INTERVAL_S,
        conversation_poll_interval_s: float = DEFAULT_CONVERSATION_POLL_INTERVAL_S,
        on_notice: Callable[[Notice], None] | None = None,
        on_messages: Callable[[list[Message]], None] | None = None,
        upload_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = monotonic_ms,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.organization_id = organization_id
        self.user_id = user_id
        self._on_notice = on_notice
        self.admission = AdmissionController(cooldown_ms=cooldown_ms, clock=clock)
        self.registry = ChannelRegistry(backend, probe_timeout_s=probe_timeout_s)
        self.resolver = ConversationResolver(backend, self.registry, now=now)
        self.sync = MessageStoreSync(
            backend,
            poll_interval_s=message_poll_interval_s,
            on_change=on_messages,
            on_error=self._report,
        )
        self.pipeline = MediaTransferPipeline(backend, http_client=upload_client)
        self.dispatcher = SendDispatcher(
            backend, self.sync, organization_id=organization_id, now=now
        )
        self.conversation_loop = RefreshLoop(
            self.refresh_conversations,
            interval_s=conversation_poll_interval_s,
            label="conversations",
            on_error=self._report,
        )
        self.conversations: list[Conversation] = []
        self.siblings: list[Conversation] = []

    @classmethod
    def from_settings(
        cls, backend: Backend, settings: ZapdeskSettings, **kwargs
    ) -> ChatSession:
        return cls(
            backend,
            organization_id=settings.organization_id,
            user_id=settings.user_id,
            cooldown_ms=settings.send_cooldown_ms,
            probe_timeout_s=settings.probe_timeout_s,
            message_poll_interval_s=settings.message_poll_interval_s,
            conversation_poll_interval_s=settings.conversation_poll_interval_s,
            **kwargs,
        )

    async def close(self) -> None:
        await self.pipeline.close()

    def _notify(self, notice: Notice) -> None:
        if self._on_notice is not None:
            self._on_notice(notice)

    def _report(self, exc: MessagingError) -> None:
        self._notify(Notice(title=exc.title, detail=exc.notice))

    @contextlib.contextmanager
    def _notices(self, operation: str) -> Iterator[None]:
        try:
            yield
        except MessagingError as exc:
            logger.warning(
                "session.operation_failed",
                operation=operation,
                error=exc.detail,
                error_type=exc.__class__.__name__,
            )
            self._report(exc)

    @property
    def active(self) -> Conversation | None:
        return self.sync.active

    @property
    def show_sibling_switcher(self) -> bool:
        return len(self.siblings) > 1

    async def load_instances(self) -> list[ChannelInstance] | None:
        result = None
        with self._notices("list instances"):
            result = await self.registry.list_instances(self.organization_id)
        return result

    async def refresh_conversations(
        self, *, instance_id: str | None = None
    ) -> list[Conversation]:
        self.conversations = await self.resolver.list_conversations(
            self.organization_id, instance_id=instance_id
        )
        return self.conversations

    def visible_conversations(self, term: str = "") -> list[Conversation]:
        return filter_conversations(self.conversations, term)

    async def _ensure_instances(self, instance_ids: set[str]) -> None:
        if any(self.registry.get(instance_id) is None for instance_id in instance_ids):
            await self.registry.list_instances(self.organization_id)

    async def open(
        self, phone_number: str, requested_instance_id: str | None = None
    ) -> Conversation | None:
        result = None
        with self._notices("open conversation"):
            address = normalize_phone(phone_number)
            if not address:
                raise InvalidAddress("enter the WhatsApp number with country code.")
            siblings = await self.resolver.resolve_siblings(self.organization_id, address)
            if not siblings:
                raise InvalidAddress(
                    "no conversation with this number yet; start one first."
                )
            self.siblings = siblings
            active = select_active(siblings, requested_instance_id)
            self.sync.activate(active)
            instance_ids = {sibling.instance_id for sibling in siblings}
            await self._ensure_instances(instance_ids)
            instances = [
                instance
                for instance_id in sorted(instance_ids)
                if (instance := self.registry.get(instance_id)) is not None
            ]
            await self.registry.verify_all(instances)
            result = active
        return result

    def switch_instance(self, instance_id: str) -> Conversation | None:
        if not self.siblings:
            return None
        active = select_active(self.siblings, instance_id)
        self.sync.activate(active)
        return active

    async def start_conversation(
        self,
        phone_number: str,
        instance_id: str,
        first_message: str | None = None,
    ) -> Conversation | None:
        result = None
        with self._notices("start conversation"):
            await self._ensure_instances({instance_id})
            instance = self.registry.get(instance_id)
            if instance is None:
                raise ScopeViolation("unknown channel instance.")
            conversation = await self.resolver.start_conversation(
                self.organization_id, phone_number, instance, self.user_id
            )
            siblings = await self.resolver.resolve_siblings(
                self.organization_id, conversation.phone_number
            )
            if all(sibling.id != conversation.id for sibling in siblings):
                siblings = sort_by_activity([*siblings, conversation])
            self.siblings = siblings
            self.sync.activate(conversation)
            result = conversation
        if result is not None and first_message and first_message.strip():
            await self.send_text(first_message)
        return result

    def _replace_conversation(self, updated: Conversation) -> None:
        self.siblings = sort_by_activity(
            updated if sibling.id == updated.id else sibling for sibling in self.siblings
        )
        self.conversations = sort_by_activity(
            updated if conv.id == updated.id else conv for conv in self.conversations
        )

    async def _admit(self) -> tuple[Conversation, Admitted]:
        conversation = self.sync.active
        if conversation is None:
            raise ScopeViolation("no conversation selected.")
        self.dispatcher.check_scope(conversation, self.siblings)
        # the gate is checked before the first await
        admitted = self.admission.admit()
        try:
            await self._ensure_instances({conversation.instance_id})
            instance = self.registry.get(conversation.instance_id)
            if instance is None:
                raise ScopeViolation("channel instance not found.")
            await self.registry.ensure_sendable(instance)
        except MessagingError:
            # nothing reached the provider
            self.admission.release(admitted)
            raise
        return conversation, admitted

    def _finish(self, outcome: SendOutcome) -> Message:
        self._replace_conversation(outcome.conversation)
        self.conversation_loop.invalidate()
        return outcome.message

    async def send_text(self, text: str) -> Message | None:
        text = text.strip()
        if not text:
            return None
        result = None
        with self._notices("send message"):
            conversation, admitted = await self._admit()
            local = self.dispatcher.stage(
                conversation,
                message_type="text",
                content=text,
                sender_user_id=self.user_id,
            )
            outcome = await self.dispatcher.send_text(
                conversation,
                self.siblings,
                local,
                text,
                admitted=admitted,
                sender_user_id=self.user_id,
            )
            result = self._finish(outcome)
        return result

    async def _send_media(
        self,
        kind: MediaKind,
        payload: bytes,
        mime_type: str,
        caption: str | None,
    ) -> Message:
        conversation, admitted = await self._admit()
        local = self.dispatcher.stage(
            conversation,
            message_type=kind,
            content=caption,
            sender_user_id=self.user_id,
        )
        transfer = MediaTransfer(kind)
        try:
            try:
                prepared = await self.pipeline.prepare(
                    transfer,
                    organization_id=self.organization_id,
                    conversation_id=conversation.id,
                    payload=payload,
                    mime_type=mime_type,
                )
            except (TargetUnavailable, UploadFailed) as exc:
                self.dispatcher.fail(local, exc.notice)
                raise
            outcome = await self.dispatcher.send_media(
                conversation,
                self.siblings,
                local,
                prepared,
                transfer,
                admitted=admitted,
                caption=caption,
                sender_user_id=self.user_id,
            )
        finally:
            transfer.discard()
        self._notify(Notice(title=f"{kind} sent", detail="", level="info"))
        return self._finish(outcome)

    async def send_image(
        self, payload: bytes, mime_type: str, caption: str | None = None
    ) -> Message | None:
        result = None
        with self._notices("send image"):
            validate_image(len(payload), mime_type)
            result = await self._send_media("image", payload, mime_type, caption or None)
        return result

    async def send_document(
        self,
        payload: bytes,
        mime_type: str,
        file_name: str,
        caption: str | None = None,
    ) -> Message | None:
        result = None
        with self._notices("send document"):
            validate_document(len(payload), mime_type)
            result = await self._send_media(
                "document", payload, mime_type, caption or file_name
            )
        return result

    async def send_audio(self, audio: CapturedAudio | AudioRecorder) -> Message | None:
        if isinstance(audio, AudioRecorder) and audio.cancelled:
            logger.info("session.audio_cancelled")
            return None
        result = None
        with self._notices("send audio"):
            captured = audio.finish() if isinstance(audio, AudioRecorder) else audio
            result = await self._send_media(
                "audio", captured.data, captured.mime_type, None
            )
        return result

    async def send_audio_payload(self, payload: str, mime_type: str) -> Message | None:
        result = None
        with self._notices("send audio"):
            data = decode_audio_payload(payload)
            result = await self._send_media("audio", data, mime_type, None)
        return result

    def dismiss_failed(self, local_id: str) -> None:
        """Drop a failed local message so the operator can resubmit it."""
        self.sync.discard_local(local_id)

    async def run(self, feed: ChangeFeed | None = None) -> None:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self.sync.loop.run)
            tg.start_soon(self.conversation_loop.run)
            if feed is not None:
                tg.start_soon(self._watch, feed)

    async def _watch(self, feed: ChangeFeed) -> None:
        with self._notices("subscribe"):
            await watch_feed(
                feed,
                table=MESSAGES_TABLE,
                organization_id=self.organization_id,
                invalidate=[self.sync.invalidate, self.conversation_loop.invalidate],
            )
