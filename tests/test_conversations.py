import pytest

from tests.fakes import ORG, USER, FakeBackend, at, conversation_row, iso
from zapdesk.channels import ChannelRegistry
from zapdesk.conversations import (
    ConversationResolver,
    filter_conversations,
    normalize_phone,
    select_active,
    sort_by_activity,
)
from zapdesk.errors import ChannelUnavailable, InvalidAddress, ScopeViolation
from zapdesk.model import ChannelInstance, Conversation


def _conv(
    conversation_id: str,
    instance_id: str,
    minutes: float | None = None,
    **kwargs,
) -> Conversation:
    return Conversation(
        id=conversation_id,
        organization_id=ORG,
        phone_number="5511999998888",
        instance_id=instance_id,
        last_message_at=at(minutes) if minutes is not None else None,
        **kwargs,
    )


class TestNormalizePhone:
    def test_adds_country_code(self) -> None:
        assert normalize_phone("11999998888") == "5511999998888"

    def test_strips_punctuation(self) -> None:
        assert normalize_phone("+55 (11) 99999-8888") == "5511999998888"

    def test_inserts_mobile_digit(self) -> None:
        assert normalize_phone("(11) 9999-8888") == "5511999998888"
        assert normalize_phone("551199998888") == "5511999998888"

    def test_keeps_full_numbers(self) -> None:
        assert normalize_phone("5521987654321") == "5521987654321"

    def test_empty_input(self) -> None:
        assert normalize_phone("") == ""
        assert normalize_phone("no digits") == ""


class TestSelectActive:
    def test_most_recent_first_and_never_active_last(self) -> None:
        older = _conv("c1", "inst-a", 10)
        newer = _conv("c2", "inst-b", 20)
        silent = _conv("c3", "inst-c")

        assert sort_by_activity([silent, older, newer]) == [newer, older, silent]
        assert select_active([older, silent, newer]) == newer

    def test_ties_break_by_instance_id(self) -> None:
        b = _conv("c1", "inst-b", 10)
        a = _conv("c2", "inst-a", 10)

        assert select_active([b, a]) == a
        assert select_active([a, b]) == a

    def test_requested_instance_wins(self) -> None:
        older = _conv("c1", "inst-a", 10)
        newer = _conv("c2", "inst-b", 20)

        assert select_active([older, newer], "inst-a") == older
        assert select_active([older, newer], "inst-missing") == newer

    def test_empty_siblings(self) -> None:
        with pytest.raises(ValueError):
            select_active([])


class TestFilterConversations:
    def test_accent_insensitive_name_match(self) -> None:
        jose = _conv("c1", "inst-a", contact_name="José Conceição")
        other = _conv("c2", "inst-a", contact_name="Maria")

        assert filter_conversations([jose, other], "jose") == [jose]
        assert filter_conversations([jose, other], "CONCEICAO") == [jose]

    def test_matches_phone_digits(self) -> None:
        conv = _conv("c1", "inst-a", contact_name="Ana")

        assert filter_conversations([conv], "99999-8888") == [conv]
        assert filter_conversations([conv], "7777") == []

    def test_blank_term_keeps_everything(self) -> None:
        convs = [_conv("c1", "inst-a"), _conv("c2", "inst-b")]

        assert filter_conversations(convs, "  ") == convs


def _instance(instance_id: str, organization_id: str = ORG) -> ChannelInstance:
    return ChannelInstance(id=instance_id, organization_id=organization_id, name=instance_id)


def _resolver(backend: FakeBackend) -> ConversationResolver:
    registry = ChannelRegistry(backend, probe_timeout_s=1)
    return ConversationResolver(backend, registry, now=lambda: at(30))


@pytest.mark.anyio
async def test_start_on_another_instance_creates_a_sibling(backend: FakeBackend) -> None:
    backend.seed("conversations", conversation_row("c1", "inst-a", last_message_at=iso(5)))
    resolver = _resolver(backend)

    created = await resolver.start_conversation(
        ORG, "11999998888", _instance("inst-b"), USER
    )

    assert created.id != "c1"
    assert created.instance_id == "inst-b"
    assert created.chat_id == "5511999998888@s.whatsapp.net"
    assert created.assigned_user_id == USER
    siblings = await resolver.resolve_siblings(ORG, "5511999998888")
    assert {s.instance_id for s in siblings} == {"inst-a", "inst-b"}
    assert [s.id for s in siblings][0] == "c1"


@pytest.mark.anyio
async def test_start_on_same_instance_reuses_and_reassigns(backend: FakeBackend) -> None:
    backend.seed(
        "conversations",
        conversation_row("c1", "inst-a", status="open", assigned_user_id=None),
    )
    resolver = _resolver(backend)

    conv = await resolver.start_conversation(ORG, "5511999998888", _instance("inst-a"), USER)

    assert conv.id == "c1"
    assert conv.is_assigned
    assert backend.tables["conversations"][0]["assigned_user_id"] == USER
    assert backend.count("insert conversations") == 0


@pytest.mark.anyio
async def test_start_keeps_existing_assignment(backend: FakeBackend) -> None:
    backend.seed("conversations", conversation_row("c1", "inst-a"))
    resolver = _resolver(backend)

    conv = await resolver.start_conversation(ORG, "5511999998888", _instance("inst-a"), USER)

    assert conv.id == "c1"
    assert backend.count("update conversations") == 0


@pytest.mark.anyio
async def test_start_on_disconnected_instance_fails(backend: FakeBackend) -> None:
    backend.connected["inst-a"] = False
    resolver = _resolver(backend)

    with pytest.raises(ChannelUnavailable, match="disconnected"):
        await resolver.start_conversation(ORG, "5511999998888", _instance("inst-a"), USER)

    assert backend.tables["conversations"] == []


@pytest.mark.anyio
async def test_start_rejects_foreign_instance(backend: FakeBackend) -> None:
    resolver = _resolver(backend)

    with pytest.raises(ScopeViolation):
        await resolver.start_conversation(
            ORG, "5511999998888", _instance("inst-x", "org-2"), USER
        )

    assert backend.calls == []


@pytest.mark.anyio
async def test_start_rejects_empty_address(backend: FakeBackend) -> None:
    resolver = _resolver(backend)

    with pytest.raises(InvalidAddress):
        await resolver.start_conversation(ORG, "   ", _instance("inst-a"), USER)


@pytest.mark.anyio
async def test_list_conversations_sorted_by_activity(backend: FakeBackend) -> None:
    backend.seed(
        "conversations",
        conversation_row("c1", "inst-a", phone_number="5511911111111"),
        conversation_row("c2", "inst-a", phone_number="5511922222222", last_message_at=iso(1)),
        conversation_row("c3", "inst-b", phone_number="5511933333333", last_message_at=iso(9)),
        conversation_row("c4", "inst-b", organization_id="org-2", last_message_at=iso(20)),
    )
    resolver = _resolver(backend)

    listed = await resolver.list_conversations(ORG)
    only_a = await resolver.list_conversations(ORG, instance_id="inst-a")

    assert [c.id for c in listed] == ["c3", "c2", "c1"]
    assert [c.id for c in only_a] == ["c2", "c1"]
