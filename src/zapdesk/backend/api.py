"""Typed endpoints over the remote store and function layer.

Rows and function payloads are converted to msgspec structs here; nothing
past this module sees an untyped dict.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, TypeVar

import msgspec

from ..errors import DataUnavailable
from ..model import ChannelInstance, Conversation, Message
from .api_models import (
    ConversationRow,
    InstanceRow,
    MessageRow,
    ProbeResponse,
    SendRequest,
    SendResponse,
    UploadTargetResponse,
)
from .client import Backend, BackendCallError

INSTANCES_TABLE = "channel_instances"
CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"

PROBE_FUNCTION = "instance-manager"
UPLOAD_TARGET_FUNCTION = "create-upload-url"
SEND_FUNCTION = "send-message"

T = TypeVar("T")


def _decode_rows(row_type: type[T], rows: list[dict[str, Any]], operation: str) -> list[T]:
    try:
        return [msgspec.convert(row, row_type) for row in rows]
    except msgspec.ValidationError as exc:
        raise DataUnavailable(operation, f"unexpected row shape ({exc})") from exc


def _decode_payload(payload_type: type[T], payload: dict[str, Any], function: str) -> T:
    try:
        return msgspec.convert(payload, payload_type)
    except msgspec.ValidationError as exc:
        raise BackendCallError(function, f"unexpected payload ({exc})") from exc


async def fetch_instances(backend: Backend, organization_id: str) -> list[ChannelInstance]:
    rows = await backend.select(
        INSTANCES_TABLE, filters={"organization_id": organization_id}, order="name"
    )
    decoded = _decode_rows(InstanceRow, rows, "list instances")
    return [row.to_model() for row in decoded if row.deleted_at is None]


async def fetch_conversations(
    backend: Backend, organization_id: str, *, instance_id: str | None = None
) -> list[Conversation]:
    filters: dict[str, Any] = {"organization_id": organization_id}
    if instance_id is not None:
        filters["instance_id"] = instance_id
    rows = await backend.select(
        CONVERSATIONS_TABLE, filters=filters, order="last_message_at", descending=True
    )
    return [row.to_model() for row in _decode_rows(ConversationRow, rows, "list conversations")]


async def fetch_siblings(
    backend: Backend, organization_id: str, phone_number: str
) -> list[Conversation]:
    rows = await backend.select(
        CONVERSATIONS_TABLE,
        filters={"organization_id": organization_id, "phone_number": phone_number},
        order="last_message_at",
        descending=True,
    )
    return [row.to_model() for row in _decode_rows(ConversationRow, rows, "resolve siblings")]


async def find_conversation(
    backend: Backend, organization_id: str, phone_number: str, instance_id: str
) -> Conversation | None:
    rows = await backend.select(
        CONVERSATIONS_TABLE,
        filters={
            "organization_id": organization_id,
            "phone_number": phone_number,
            "instance_id": instance_id,
        },
        limit=1,
    )
    decoded = _decode_rows(ConversationRow, rows, "find conversation")
    return decoded[0].to_model() if decoded else None


async def create_conversation(
    backend: Backend,
    *,
    organization_id: str,
    phone_number: str,
    instance_id: str,
    user_id: str,
    now: datetime,
) -> Conversation:
    row = await backend.insert(
        CONVERSATIONS_TABLE,
        {
            "organization_id": organization_id,
            "instance_id": instance_id,
            "phone_number": phone_number,
            "chat_id": f"{phone_number}@s.whatsapp.net",
            "is_group": False,
            "unread_count": 0,
            "status": "assigned",
            "assigned_user_id": user_id,
            "assigned_at": now.isoformat(),
        },
    )
    return _decode_rows(ConversationRow, [row], "start conversation")[0].to_model()


async def assign_conversation(
    backend: Backend, conversation_id: str, user_id: str, now: datetime
) -> None:
    await backend.update(
        CONVERSATIONS_TABLE,
        {
            "status": "assigned",
            "assigned_user_id": user_id,
            "assigned_at": now.isoformat(),
        },
        filters={"id": conversation_id},
    )


async def mark_read(backend: Backend, conversation_id: str) -> None:
    await backend.update(
        CONVERSATIONS_TABLE, {"unread_count": 0}, filters={"id": conversation_id}
    )


async def fetch_messages(backend: Backend, conversation_id: str) -> list[Message]:
    rows = await backend.select(
        MESSAGES_TABLE, filters={"conversation_id": conversation_id}, order="created_at"
    )
    return [row.to_model() for row in _decode_rows(MessageRow, rows, "fetch messages")]


async def probe_instance(backend: Backend, instance: ChannelInstance) -> ProbeResponse:
    payload = await backend.invoke(
        PROBE_FUNCTION,
        {
            "action": "status",
            "instanceId": instance.id,
            "organizationId": instance.organization_id,
        },
    )
    return _decode_payload(ProbeResponse, payload, PROBE_FUNCTION)


async def create_upload_target(
    backend: Backend,
    *,
    organization_id: str,
    conversation_id: str,
    mime_type: str,
    kind: str,
) -> UploadTargetResponse:
    payload = await backend.invoke(
        UPLOAD_TARGET_FUNCTION,
        {
            "organizationId": organization_id,
            "conversationId": conversation_id,
            "mimeType": mime_type,
            "kind": kind,
        },
    )
    return _decode_payload(UploadTargetResponse, payload, UPLOAD_TARGET_FUNCTION)


async def send_message(backend: Backend, request: SendRequest) -> SendResponse:
    payload = await backend.invoke(SEND_FUNCTION, msgspec.to_builtins(request))
    return _decode_payload(SendResponse, payload, SEND_FUNCTION)
