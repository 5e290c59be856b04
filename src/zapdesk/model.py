"""Zapdesk domain model types (channel instances, conversations, messages)."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal, TypeAlias

Direction: TypeAlias = Literal["inbound", "outbound"]

MessageType: TypeAlias = Literal[
    "text",
    "image",
    "audio",
    "video",
    "document",
    "sticker",
]

MESSAGE_TYPES: frozenset[str] = frozenset(
    {"text", "image", "audio", "video", "document", "sticker"}
)


class VerifiedStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


class DeliveryStatus(str, enum.Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.READ, DeliveryStatus.FAILED)


_STATUS_RANK = {
    DeliveryStatus.SENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


def advance_status(current: DeliveryStatus, new: DeliveryStatus) -> DeliveryStatus:
    """Return the status a message holds after observing ``new``.

    Statuses only move forward along sending -> sent -> delivered -> read;
    failed is reachable from any non-terminal status and never left.
    """
    if current.is_terminal:
        return current
    if new is DeliveryStatus.FAILED:
        return new
    if _STATUS_RANK[new] > _STATUS_RANK[current]:
        return new
    return current


@dataclass(frozen=True, slots=True)
class ChannelInstance:
    id: str
    organization_id: str
    name: str
    phone_number: str | None = None
    display_name: str | None = None
    declared_connected: bool = False
    verified: VerifiedStatus = VerifiedStatus.UNKNOWN

    @property
    def label(self) -> str:
        display = self.display_name or self.name
        if display and self.phone_number:
            return f"{display} · {self.phone_number}"
        return display or self.phone_number or self.name


@dataclass(frozen=True, slots=True)
class Conversation:
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

    @property
    def is_assigned(self) -> bool:
        return self.status == "assigned" and self.assigned_user_id is not None


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_id: str
    direction: Direction
    message_type: MessageType
    created_at: datetime
    status: DeliveryStatus = DeliveryStatus.SENDING
    content: str | None = None
    media_ref: str | None = None
    error_detail: str | None = None
    sender_user_id: str | None = None

    def __post_init__(self) -> None:
        if self.status is DeliveryStatus.FAILED and not self.error_detail:
            raise ValueError("failed messages must carry a failure detail")

    def with_status(
        self, status: DeliveryStatus, *, error_detail: str | None = None
    ) -> Message:
        advanced = advance_status(self.status, status)
        if advanced is self.status:
            return self
        if advanced is DeliveryStatus.FAILED:
            return replace(self, status=advanced, error_detail=error_detail)
        return replace(self, status=advanced)
