"""Pure renderers for conversation lists, threads and the sibling switcher."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone

from .model import ChannelInstance, Conversation, DeliveryStatus, Message

HEADER_SEP = " · "
UNREAD_MARK = "●"

STATUS_SYMBOLS: dict[DeliveryStatus, str] = {
    DeliveryStatus.SENDING: "…",
    DeliveryStatus.SENT: "✓",
    DeliveryStatus.DELIVERED: "✓✓",
    DeliveryStatus.READ: "✓✓ read",
    DeliveryStatus.FAILED: "✗",
}


def format_recency(ts: datetime | None, now: datetime) -> str:
    if ts is None:
        return ""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    elapsed = max(0, int((now - ts).total_seconds()))
    if elapsed < 60:
        return "now"
    minutes = elapsed // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    days = hours // 24
    if days < 7:
        return f"{days}d"
    return ts.date().isoformat()


def instance_label(
    instance_id: str, instances: Mapping[str, ChannelInstance]
) -> str:
    instance = instances.get(instance_id)
    return instance.label if instance is not None else instance_id


def format_conversation(
    conversation: Conversation,
    instances: Mapping[str, ChannelInstance],
    now: datetime,
) -> str:
    name = conversation.contact_name or conversation.phone_number
    parts = [name]
    if conversation.contact_name:
        parts.append(conversation.phone_number)
    parts.append(instance_label(conversation.instance_id, instances))
    recency = format_recency(conversation.last_message_at, now)
    if recency:
        parts.append(recency)
    line = HEADER_SEP.join(parts)
    if conversation.unread_count > 0:
        return f"{UNREAD_MARK} {conversation.unread_count} {line}"
    return f"  {line}"


def render_conversation_list(
    conversations: list[Conversation],
    instances: Mapping[str, ChannelInstance],
    now: datetime,
) -> list[str]:
    return [format_conversation(conv, instances, now) for conv in conversations]


def format_message(message: Message) -> str:
    arrow = "→" if message.direction == "outbound" else "←"
    stamp = message.created_at.strftime("%H:%M")
    if message.message_type == "text":
        body = message.content or ""
    else:
        body = f"[{message.message_type}]"
        if message.content:
            body = f"{body} {message.content}"
    line = f"{stamp} {arrow} {body}"
    if message.direction == "outbound":
        line = f"{line} {STATUS_SYMBOLS[message.status]}"
        if message.status is DeliveryStatus.FAILED:
            line = f"{line} {message.error_detail}"
    return line


def render_thread(messages: list[Message]) -> list[str]:
    return [format_message(message) for message in messages]


def render_sibling_switcher(
    siblings: list[Conversation],
    instances: Mapping[str, ChannelInstance],
    active_id: str | None,
) -> list[str] | None:
    """One tab per channel; nothing when the contact has a single conversation."""
    if len(siblings) <= 1:
        return None
    tabs: list[str] = []
    for sibling in siblings:
        marker = "*" if sibling.id == active_id else " "
        label = instance_label(sibling.instance_id, instances)
        if sibling.unread_count > 0:
            label = f"{label} ({sibling.unread_count})"
        tabs.append(f"{marker} {label}")
    return tabs
