from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone

from .backend import api
from .backend.client import Backend
from .channels import ChannelRegistry
from .errors import InvalidAddress, ScopeViolation
from .logging import get_logger
from .model import ChannelInstance, Conversation

logger = get_logger(__name__)

__all__ = [
    "COUNTRY_CODE",
    "ConversationResolver",
    "activity_key",
    "filter_conversations",
    "normalize_phone",
    "normalize_text",
    "select_active",
    "sort_by_activity",
]

COUNTRY_CODE = "55"
# country code + area code + 8-digit local number, missing the mobile digit
_LENGTH_WITHOUT_MOBILE_DIGIT = 12
_MOBILE_DIGIT = "9"
_NON_DIGITS_RE = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    digits = _NON_DIGITS_RE.sub("", raw)
    if not digits:
        return ""
    if not digits.startswith(COUNTRY_CODE):
        digits = f"{COUNTRY_CODE}{digits}"
    if len(digits) == _LENGTH_WITHOUT_MOBILE_DIGIT:
        digits = digits[:4] + _MOBILE_DIGIT + digits[4:]
    return digits


def normalize_text(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold().strip()


def activity_key(conversation: Conversation) -> tuple[bool, float, str, str]:
    """Sort key: most recent first, never-active last, ties by instance id."""
    ts = conversation.last_message_at
    return (
        ts is None,
        -ts.timestamp() if ts is not None else 0.0,
        conversation.instance_id,
        conversation.id,
    )


def sort_by_activity(conversations: Iterable[Conversation]) -> list[Conversation]:
    return sorted(conversations, key=activity_key)


def select_active(
    siblings: list[Conversation], requested_instance_id: str | None = None
) -> Conversation:
    if not siblings:
        raise ValueError("no conversations to select from")
    if requested_instance_id is not None:
        for sibling in siblings:
            if sibling.instance_id == requested_instance_id:
                return sibling
    return sort_by_activity(siblings)[0]


def filter_conversations(
    conversations: Iterable[Conversation], term: str
) -> list[Conversation]:
    needle = normalize_text(term)
    if not needle:
        return list(conversations)
    digits = _NON_DIGITS_RE.sub("", term)
    matched: list[Conversation] = []
    for conversation in conversations:
        name = normalize_text(conversation.contact_name or "")
        if needle in name or needle in conversation.phone_number:
            matched.append(conversation)
        elif digits and digits in conversation.phone_number:
            matched.append(conversation)
    return matched


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationResolver:
    def __init__(
        self,
        backend: Backend,
        registry: ChannelRegistry,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._now = now

    async def list_conversations(
        self, organization_id: str, *, instance_id: str | None = None
    ) -> list[Conversation]:
        conversations = await api.fetch_conversations(
            self._backend, organization_id, instance_id=instance_id
        )
        return sort_by_activity(conversations)

    async def resolve_siblings(
        self, organization_id: str, phone_number: str
    ) -> list[Conversation]:
        siblings = await api.fetch_siblings(self._backend, organization_id, phone_number)
        return sort_by_activity(
            sibling for sibling in siblings if sibling.organization_id == organization_id
        )

    async def start_conversation(
        self,
        organization_id: str,
        phone_number: str,
        instance: ChannelInstance,
        initiating_user_id: str,
    ) -> Conversation:
        """Find or create the conversation for (address, instance).

        Reuse only happens on the same instance; another instance always
        gets its own sibling.
        """
        address = normalize_phone(phone_number)
        if not address:
            raise InvalidAddress("enter the WhatsApp number with country code.")
        if instance.organization_id != organization_id:
            raise ScopeViolation(f"{instance.label} does not belong to this organization.")

        await self._registry.ensure_sendable(instance)

        now = self._now()
        existing = await api.find_conversation(
            self._backend, organization_id, address, instance.id
        )
        if existing is not None:
            if existing.is_assigned:
                return existing
            await api.assign_conversation(
                self._backend, existing.id, initiating_user_id, now
            )
            logger.info(
                "conversations.reassigned",
                conversation_id=existing.id,
                user_id=initiating_user_id,
            )
            return replace(
                existing, status="assigned", assigned_user_id=initiating_user_id
            )

        created = await api.create_conversation(
            self._backend,
            organization_id=organization_id,
            phone_number=address,
            instance_id=instance.id,
            user_id=initiating_user_id,
            now=now,
        )
        logger.info(
            "conversations.created",
            conversation_id=created.id,
            instance_id=instance.id,
            user_id=initiating_user_id,
        )
        return created
