import json

import httpx
import pytest

from zapdesk.backend import BackendCallError, BackendClient
from zapdesk.backend import api
from zapdesk.backend.feed import ChangeEvent
from zapdesk.errors import DataUnavailable

BASE = "https://backend.test"
KEY = "anon-key-123"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_select_builds_filters_and_order() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "c1"}], request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        rows = await backend.select(
            "conversations",
            filters={"organization_id": "org-1", "lead_id": None, "is_group": False},
            order="last_message_at",
            descending=True,
            limit=5,
        )
    finally:
        await client.aclose()

    assert rows == [{"id": "c1"}]
    (request,) = seen
    assert request.url.path == "/rest/v1/conversations"
    assert request.url.params["organization_id"] == "eq.org-1"
    assert request.url.params["lead_id"] == "is.null"
    assert request.url.params["is_group"] == "eq.false"
    assert request.url.params["order"] == "last_message_at.desc.nullslast"
    assert request.url.params["limit"] == "5"
    assert request.headers["apikey"] == KEY
    assert request.headers["Authorization"] == f"Bearer {KEY}"


@pytest.mark.anyio
async def test_select_http_error_is_data_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops", request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(DataUnavailable, match="select messages failed: HTTP 500"):
            await backend.select("messages")
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_select_network_error_is_data_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(DataUnavailable, match="connection refused"):
            await backend.select("messages")
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_select_rejects_unexpected_shape() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json="nope", request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(DataUnavailable, match="unexpected response shape"):
            await backend.select("messages")
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_insert_asks_for_the_stored_row() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json=[{"id": "c9", **body}], request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        row = await backend.insert("conversations", {"phone_number": "5511999998888"})
    finally:
        await client.aclose()

    assert row == {"id": "c9", "phone_number": "5511999998888"}
    assert seen[0].method == "POST"
    assert seen[0].headers["Prefer"] == "return=representation"


@pytest.mark.anyio
async def test_update_requires_filters() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(ValueError, match="without filters"):
            await backend.update("conversations", {"unread_count": 0}, filters={})
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_invoke_http_error_carries_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/functions/v1/send-message"
        return httpx.Response(502, text="bad gateway", request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(BackendCallError) as excinfo:
            await backend.invoke("send-message", {"content": "hi"})
    finally:
        await client.aclose()

    assert excinfo.value.status == 502
    assert excinfo.value.function == "send-message"


@pytest.mark.anyio
async def test_invoke_rejects_non_object_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[1, 2], request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(BackendCallError, match="unexpected response shape"):
            await backend.invoke("instance-manager", {})
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_send_message_payload_is_camel_case() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"success": True, "providerMessageId": "wamid-1"},
            request=request,
        )

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        response = await api.send_message(
            backend,
            api.SendRequest(
                organization_id="org-1",
                conversation_id="c1",
                instance_id="inst-a",
                phone="5511999998888",
                message_type="text",
                content="hi",
            ),
        )
    finally:
        await client.aclose()

    assert response.success
    assert response.provider_message_id == "wamid-1"
    assert bodies == [
        {
            "organizationId": "org-1",
            "conversationId": "c1",
            "instanceId": "inst-a",
            "phone": "5511999998888",
            "messageType": "text",
            "content": "hi",
        }
    ]


@pytest.mark.anyio
async def test_malformed_send_response_is_a_call_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": "maybe"}, request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(BackendCallError, match="unexpected payload"):
            await api.send_message(
                backend,
                api.SendRequest(
                    organization_id="org-1",
                    conversation_id="c1",
                    instance_id="inst-a",
                    phone="5511999998888",
                    message_type="text",
                ),
            )
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_change_feed_streams_events_and_skips_noise() -> None:
    lines = [
        json.dumps({"table": "messages", "event": "INSERT", "organization_id": "org-1"}),
        "",
        "not json",
        json.dumps(
            {"table": "messages", "event": "UPDATE", "record": {"id": "m1"}}
        ),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/realtime/v1/changes"
        assert request.url.params["table"] == "messages"
        return httpx.Response(
            200, content="\n".join(lines).encode(), request=request
        )

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        events = [event async for event in backend.change_feed("messages", "org-1")]
    finally:
        await client.aclose()

    assert events == [
        ChangeEvent(table="messages", event="INSERT", organization_id="org-1"),
        ChangeEvent(table="messages", event="UPDATE", record={"id": "m1"}),
    ]


@pytest.mark.anyio
async def test_change_feed_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, request=request)

    client = _client(handler)
    try:
        backend = BackendClient(BASE, KEY, client=client)
        with pytest.raises(DataUnavailable, match="subscribe messages failed: HTTP 401"):
            async for _ in backend.change_feed("messages", "org-1"):
                pass
    finally:
        await client.aclose()


def test_empty_api_key_raises() -> None:
    with pytest.raises(ValueError, match="empty"):
        BackendClient(BASE, "")
