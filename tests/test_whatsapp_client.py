# tests/test_whatsapp_client.py

import json

import httpx
import pytest

from app.bot.payloads import ButtonsPayload, ListPayload, ListRow, ListSection, ReplyButton, TextPayload
from app.clients.whatsapp import WhatsAppClient, build_message
from app.core.exceptions import NotificationFailure


def test_text_message():
    message = build_message("919900000001", TextPayload(body="Hello"))
    assert message["type"] == "text"
    assert message["to"] == "919900000001"
    assert message["text"]["body"] == "Hello"


def test_buttons_message_trims_titles():
    payload = ButtonsPayload(
        body="Claim?",
        header="⚡ FLASH DEAL",
        buttons=[ReplyButton(id="flash_claim_1", title="A very long button title indeed")],
    )
    message = build_message("919900000001", payload)

    interactive = message["interactive"]
    assert interactive["type"] == "button"
    assert interactive["header"] == {"type": "text", "text": "⚡ FLASH DEAL"}
    reply = interactive["action"]["buttons"][0]["reply"]
    assert reply["id"] == "flash_claim_1"
    assert len(reply["title"]) == 20


def test_list_message():
    payload = ListPayload(
        body="Pick a deal",
        button_text="Deals",
        sections=[ListSection(title="Nearby", rows=[ListRow(id="deal_1", title="Masala Chai")])],
    )
    message = build_message("919900000001", payload)

    assert message["interactive"]["type"] == "list"
    assert message["interactive"]["action"]["sections"][0]["rows"][0] == {
        "id": "deal_1", "title": "Masala Chai", "description": ""
    }
    assert "header" not in message["interactive"]


def test_buttons_payload_allows_at_most_three_buttons():
    with pytest.raises(ValueError):
        ButtonsPayload(body="x", buttons=[ReplyButton(id=str(i), title="b") for i in range(4)])


def _client(handler) -> WhatsAppClient:
    client = WhatsAppClient(base_url="https://graph.test/v19.0", phone_number_id="123", access_token="token")
    client.async_client = httpx.AsyncClient(base_url="https://graph.test/v19.0", transport=httpx.MockTransport(handler))
    return client


@pytest.mark.asyncio
async def test_send_posts_to_phone_number_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

    client = _client(handler)
    response = await client.send("919900000001", TextPayload(body="Hi"))
    await client.close()

    assert seen["path"] == "/v19.0/123/messages"
    assert seen["body"]["to"] == "919900000001"
    assert response["messages"][0]["id"] == "wamid.1"


@pytest.mark.asyncio
async def test_unreachable_number_is_reported_as_forbidden():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": 131026, "message": "Message undeliverable"}})

    client = _client(handler)
    with pytest.raises(NotificationFailure) as exc_info:
        await client.send("919900000001", TextPayload(body="Hi"))
    await client.close()

    assert exc_info.value.forbidden is True
    assert exc_info.value.recipient == "919900000001"


@pytest.mark.asyncio
async def test_server_error_is_not_forbidden():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    client = _client(handler)
    with pytest.raises(NotificationFailure) as exc_info:
        await client.send("919900000001", TextPayload(body="Hi"))
    await client.close()

    assert exc_info.value.forbidden is False
