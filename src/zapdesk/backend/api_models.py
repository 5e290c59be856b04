from __future__ import annotations

from datetime import datetime
from typing import Any

import msgspec

from ..model import (
    MESSAGE_TYPES,
    ChannelInstance,
    Conversation,
    DeliveryStatus,
    Message,
)

__all__ = [
    "ChangeEventRow",
    "ConversationRow",
    "InstanceRow",
    "MessageRow",
    "ProbeResponse",
    "SendRequest",
    "SendResponse",
    "UploadTargetResponse",
]

_PROVIDER_FAILURE = "provider reported a failure without detail"


class InstanceRow(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    organization_id: str
    name: str = ""
    phone_number: str | None = None
    manual_instance_number: str | None = None
    display_name_for_team: str | None = None
    is_connected: bool = False
    deleted_at: str | None = None

    def to_model(self) -> ChannelInstance:
        return ChannelInstance(
            id=self.id,
            organization_id=self.organization_id,
            name=self.name,
            phone_number=self.manual_instance_number or self.phone_number,
            display_name=self.display_name_for_team,
            declared_connected=self.is_connected,
        )


class ConversationRow(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    organization_id: str
    phone_number: str
    instance_id: str
    last_message_at: datetime | None = None
    unread_count: int = 0
    is_group: bool = False
    lead_id: str | None = None
    contact_name: str | None = None
    chat_id: str | None = None
    status: str | None = None
    assigned_user_id: str | None = None

    def to_model(self) -> Conversation:
        return Conversation(
            id=self.id,
            organization_id=self.organization_id,
            phone_number=self.phone_number,
            instance_id=self.instance_id,
            last_message_at=self.last_message_at,
            unread_count=self.unread_count,
            is_group=self.is_group,
            lead_id=self.lead_id,
            contact_name=self.contact_name,
            chat_id=self.chat_id,
            status=self.status,
            assigned_user_id=self.assigned_user_id,
        )


def _parse_status(value: str | None) -> DeliveryStatus:
    if value == "pending":
        return DeliveryStatus.SENDING
    try:
        return DeliveryStatus(value)
    except ValueError:
        return DeliveryStatus.SENT


class MessageRow(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    conversation_id: str
    direction: str
    created_at: datetime
    message_type: str = "text"
    content: str | None = None
    media_url: str | None = None
    media_caption: str | None = None
    status: str | None = None
    error_message: str | None = None
    sent_by_user_id: str | None = None

    def to_model(self) -> Message:
        status = _parse_status(self.status)
        error_detail = self.error_message
        if status is DeliveryStatus.FAILED and not error_detail:
            error_detail = _PROVIDER_FAILURE
        message_type = self.message_type if self.message_type in MESSAGE_TYPES else "text"
        content = self.content
        if message_type != "text" and not content:
            content = self.media_caption
        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            direction="outbound" if self.direction == "outbound" else "inbound",
            message_type=message_type,  # type: ignore[arg-type]
            created_at=self.created_at,
            status=status,
            content=content,
            media_ref=self.media_url,
            error_detail=error_detail,
            sender_user_id=self.sent_by_user_id,
        )


class ProbeResponse(msgspec.Struct, forbid_unknown_fields=False):
    is_connected: bool | None = None
    status: str | None = None
    error: str | None = None


class UploadTargetResponse(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    success: bool = False
    signed_url: str | None = None
    path: str | None = None
    error: str | None = None


class SendRequest(msgspec.Struct, rename="camel", omit_defaults=True):
    organization_id: str
    conversation_id: str
    instance_id: str
    phone: str
    message_type: str
    content: str = ""
    chat_id: str | None = None
    media_storage_path: str | None = None
    media_mime_type: str | None = None
    media_caption: str | None = None
    sender_user_id: str | None = None


class SendResponse(msgspec.Struct, forbid_unknown_fields=False, rename="camel"):
    success: bool = False
    provider_message_id: str | None = None
    message: MessageRow | None = None
    error: str | None = None


class ChangeEventRow(msgspec.Struct, forbid_unknown_fields=False):
    table: str
    event: str
    organization_id: str | None = None
    record: dict[str, Any] = msgspec.field(default_factory=dict)
