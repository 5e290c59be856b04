from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .admission import Admitted
from .backend import api
from .backend.api_models import SendRequest
from .backend.client import Backend, BackendCallError
from .errors import MessagingError, ProviderRejected, ProviderUnreachable, ScopeViolation
from .logging import get_logger
from .media import MediaTransfer, PreparedMedia, TransferState
from .model import Conversation, DeliveryStatus, Message, MessageType
from .sync import MessageStoreSync

logger = get_logger(__name__)

__all__ = [
    "SendDispatcher",
    "SendOutcome",
]


@dataclass(frozen=True, slots=True)
class SendOutcome:
    message: Message
    conversation: Conversation
    provider_message_id: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SendDispatcher:
    """Single choke point for provider sends and local reconciliation."""

    def __init__(
        self,
        backend: Backend,
        sync: MessageStoreSync,
        *,
        organization_id: str,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._backend = backend
        self._sync = sync
        self._organization_id = organization_id
        self._now = now
        self._seq = itertools.count(1)

    def check_scope(
        self, conversation: Conversation, siblings: list[Conversation]
    ) -> None:
        if conversation.organization_id != self._organization_id:
            raise ScopeViolation("conversation belongs to another organization.")
        for sibling in siblings:
            if (
                sibling.id == conversation.id
                and sibling.instance_id == conversation.instance_id
            ):
                return
        raise ScopeViolation("channel is not one of this contact's conversations.")

    def stage(
        self,
        conversation: Conversation,
        *,
        message_type: MessageType,
        content: str | None,
        sender_user_id: str | None,
    ) -> Message:
        local = Message(
            id=f"temp-{next(self._seq)}",
            conversation_id=conversation.id,
            direction="outbound",
            message_type=message_type,
            created_at=self._now(),
            status=DeliveryStatus.SENDING,
            content=content,
            sender_user_id=sender_user_id,
        )
        self._sync.add_local(local)
        return local

    def fail(self, local: Message, detail: str) -> Message:
        failed = self._sync.fail_local(local.id, detail)
        if failed is None:
            failed = local.with_status(DeliveryStatus.FAILED, error_detail=detail)
        return failed

    async def send_text(
        self,
        conversation: Conversation,
        siblings: list[Conversation],
        local: Message,
        text: str,
        *,
        admitted: Admitted,
        sender_user_id: str | None,
    ) -> SendOutcome:
        request = SendRequest(
            organization_id=self._organization_id,
            conversation_id=conversation.id,
            instance_id=conversation.instance_id,
            phone=conversation.phone_number,
            chat_id=conversation.chat_id,
            message_type="text",
            content=text,
            sender_user_id=sender_user_id,
        )
        return await self._dispatch(conversation, siblings, local, request, admitted)

    async def send_media(
        self,
        conversation: Conversation,
        siblings: list[Conversation],
        local: Message,
        prepared: PreparedMedia,
        transfer: MediaTransfer,
        *,
        admitted: Admitted,
        caption: str | None,
        sender_user_id: str | None,
    ) -> SendOutcome:
        if transfer.state is not TransferState.DISPATCHING:
            detail = f"media dispatched before its upload completed ({transfer.state.value})"
            self.fail(local, detail)
            raise RuntimeError(detail)
        request = SendRequest(
            organization_id=self._organization_id,
            conversation_id=conversation.id,
            instance_id=conversation.instance_id,
            phone=conversation.phone_number,
            chat_id=conversation.chat_id,
            message_type=prepared.kind,
            content=caption or "",
            media_storage_path=prepared.storage_path,
            media_mime_type=prepared.mime_type,
            media_caption=caption,
            sender_user_id=sender_user_id,
        )
        try:
            outcome = await self._dispatch(
                conversation, siblings, local, request, admitted
            )
        except MessagingError as exc:
            transfer.fail(exc.notice)
            raise
        transfer.advance(TransferState.SENT)
        return outcome

    async def _dispatch(
        self,
        conversation: Conversation,
        siblings: list[Conversation],
        local: Message,
        request: SendRequest,
        admitted: Admitted,
    ) -> SendOutcome:
        try:
            self.check_scope(conversation, siblings)
        except ScopeViolation as exc:
            self.fail(local, exc.detail)
            raise

        logger.info(
            "dispatch.sending",
            conversation_id=conversation.id,
            instance_id=conversation.instance_id,
            message_type=request.message_type,
            admitted_at_ms=admitted.at_ms,
        )
        try:
            response = await api.send_message(self._backend, request)
        except BackendCallError as exc:
            self.fail(local, exc.detail)
            raise ProviderUnreachable(exc.detail) from exc

        if not response.success:
            detail = response.error or "provider refused the message"
            logger.warning(
                "dispatch.rejected",
                conversation_id=conversation.id,
                error=detail,
            )
            self.fail(local, detail)
            raise ProviderRejected(detail)

        server_message = response.message.to_model() if response.message else None
        self._sync.resolve_local(local.id, server_message)
        self._sync.invalidate()
        logger.info(
            "dispatch.sent",
            conversation_id=conversation.id,
            provider_message_id=response.provider_message_id,
        )
        updated = replace(conversation, last_message_at=self._now(), unread_count=0)
        return SendOutcome(
            message=server_message or local.with_status(DeliveryStatus.SENT),
            conversation=updated,
            provider_message_id=response.provider_message_id,
        )
