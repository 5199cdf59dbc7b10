"""
Tests for the message endpoints.

Tests cover:
- GET /conversations/{id}/messages: ordering and cursor pagination
- POST /conversations/{id}/messages: send pipeline outcomes
- GET /conversations/{id}/window: 24-hour messaging window
- GET /messages/search: branch-wide content search
"""

import pytest

from school_chat.delivery import get_delivery_channel
from school_chat.errors import DeliveryError
from school_chat.main import app
from tests.conftest import BRANCH_ID


class RecordingChannel:
    """Delivery channel that accepts every message and remembers it."""

    name = "recording"

    def __init__(self):
        self.sent = []

    async def send_text(self, to, body):
        self.sent.append((to, body))
        return f"wamid.{len(self.sent)}"


class FailingChannel:
    name = "failing"

    async def send_text(self, to, body):
        raise DeliveryError("provider unavailable")


@pytest.fixture
def conversation(client, receive, conversation_for):
    """A conversation opened by one incoming message."""
    receive("m1", text="Hello from parent")
    return conversation_for("+919876543210")


@pytest.fixture
def seeded_conversation(client, receive, conversation_for):
    """A conversation with seven incoming messages."""
    for i in range(1, 8):
        receive(f"m{i}", text=f"Message {i}")
    return conversation_for("+919876543210")


class TestListMessages:
    """Message retrieval and paging."""

    def test_messages_oldest_first(self, client, seeded_conversation):
        response = client.get(f"/conversations/{seeded_conversation['id']}/messages")

        assert response.status_code == 200
        data = response.json()
        assert [m["content"] for m in data["data"]] == [f"Message {i}" for i in range(1, 8)]
        assert data["has_more"] is False
        assert data["next_cursor"] is None

        ids = [m["id"] for m in data["data"]]
        assert ids == sorted(ids)

    def test_limit_returns_newest_page(self, client, seeded_conversation):
        response = client.get(f"/conversations/{seeded_conversation['id']}/messages", params={"limit": 3})

        data = response.json()
        assert [m["content"] for m in data["data"]] == ["Message 5", "Message 6", "Message 7"]
        assert data["has_more"] is True
        assert data["next_cursor"] == data["data"][0]["id"]

    def test_cursor_walks_backwards_without_gaps(self, client, seeded_conversation):
        """Following next_cursor visits every message exactly once."""
        url = f"/conversations/{seeded_conversation['id']}/messages"
        seen = []
        params = {"limit": 3}

        while True:
            page = client.get(url, params=params).json()
            seen = [m["content"] for m in page["data"]] + seen
            if not page["has_more"]:
                break
            params = {"limit": 3, "before": page["next_cursor"]}

        assert seen == [f"Message {i}" for i in range(1, 8)]

    def test_empty_conversation(self, client):
        created = client.post(
            "/conversations",
            json={"branch_id": BRANCH_ID, "participant_phone": "+14155550100", "participant_name": "New Teacher"},
        ).json()

        data = client.get(f"/conversations/{created['id']}/messages").json()
        assert data["data"] == []
        assert data["has_more"] is False

    def test_unknown_conversation_404(self, client):
        response = client.get("/conversations/does-not-exist/messages")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_limit_bounds(self, client, conversation):
        url = f"/conversations/{conversation['id']}/messages"
        assert client.get(url, params={"limit": 0}).status_code == 422
        assert client.get(url, params={"limit": 101}).status_code == 422


class TestSendMessage:
    """POST /conversations/{id}/messages"""

    def test_send_without_channel_is_stored_and_skipped(self, client, conversation, conversation_for):
        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": "Thanks, noted."},
            headers={"X-User-ID": "staff-42"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["delivered"] is False
        assert data["delivery_status"] == "skipped"
        assert data["warning"] is None
        assert data["message"]["direction"] == "OUTGOING"
        assert data["message"]["status"] == "sent"
        assert data["message"]["sent_by"] == "staff-42"

        after = conversation_for("+919876543210")
        assert after["total_message_count"] == 2
        assert after["last_message_content"] == "Thanks, noted."
        assert after["last_message_from"] == "OUTGOING"
        # Outgoing messages never touch the unread counter
        assert after["unread_count"] == 1

    def test_send_delivered_stores_provider_id(self, client, conversation):
        channel = RecordingChannel()
        app.dependency_overrides[get_delivery_channel] = lambda: channel

        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Hi"})

        assert response.status_code == 201
        data = response.json()
        assert data["delivered"] is True
        assert data["delivery_status"] == "delivered"
        assert data["message"]["provider_message_id"] == "wamid.1"
        assert channel.sent == [("+919876543210", "Hi")]

    def test_delivery_failure_keeps_message(self, client, conversation, conversation_for):
        app.dependency_overrides[get_delivery_channel] = lambda: FailingChannel()

        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Hi"})

        assert response.status_code == 201
        data = response.json()
        assert data["delivered"] is False
        assert data["delivery_status"] == "failed"
        assert "provider unavailable" in data["warning"]
        assert data["message"]["status"] == "sent"

        messages = client.get(f"/conversations/{conversation['id']}/messages").json()["data"]
        assert [m["direction"] for m in messages] == ["INCOMING", "OUTGOING"]
        assert conversation_for("+919876543210")["total_message_count"] == 2

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_blank_content_rejected(self, client, conversation, conversation_for, content):
        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": content})

        assert response.status_code == 422
        assert response.json() == {"detail": "Message content is required"}
        assert conversation_for("+919876543210")["total_message_count"] == 1

    def test_send_to_inactive_conversation_409(self, client, conversation, conversation_for):
        client.patch(f"/conversations/{conversation['id']}", json={"is_active": False})

        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Hi"})

        assert response.status_code == 409
        assert conversation_for("+919876543210")["total_message_count"] == 1

    def test_send_to_unknown_conversation_404(self, client):
        response = client.post("/conversations/missing/messages", json={"content": "Hi"})
        assert response.status_code == 404

    def test_send_reports_window(self, client, conversation):
        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Hi"})
        window = response.json()["window"]
        assert window["can_send_freeform"] is True
        assert window["hours_remaining"] > 23


class TestMessageWindow:
    """GET /conversations/{id}/window"""

    def test_open_after_incoming(self, client, conversation):
        data = client.get(f"/conversations/{conversation['id']}/window").json()

        assert data["can_send_freeform"] is True
        assert data["conversation_id"] == conversation["id"]
        assert data["last_incoming_message_at"] == conversation["last_message_at"]

    def test_closed_after_outgoing(self, client, conversation):
        client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Hi"})

        data = client.get(f"/conversations/{conversation['id']}/window").json()
        assert data["can_send_freeform"] is False
        assert "outgoing" in data["reason"]

    def test_closed_without_messages(self, client):
        created = client.post(
            "/conversations",
            json={"branch_id": BRANCH_ID, "participant_phone": "+14155550100"},
        ).json()

        data = client.get(f"/conversations/{created['id']}/window").json()
        assert data["can_send_freeform"] is False
        assert "template" in data["reason"]


class TestSearchMessages:
    """GET /messages/search"""

    def test_case_insensitive_match(self, client, receive):
        receive("m1", phone="+919876543210", text="Fee receipt please")
        receive("m2", phone="+911234567890", text="Where is the FEE schedule?")
        receive("m3", phone="+911234567890", text="Thanks")

        data = client.get("/messages/search", params={"branch_id": BRANCH_ID, "q": "fee"}).json()

        assert data["total"] == 2
        assert [hit["message"]["content"] for hit in data["data"]] == [
            "Where is the FEE schedule?",
            "Fee receipt please",
        ]
        assert data["data"][0]["participant_phone"] == "+911234567890"

    def test_scoped_to_branch(self, client, receive):
        receive("m1", text="Fee receipt please")
        receive("m2", text="Fee receipt please", branch_id="branch-2")

        data = client.get("/messages/search", params={"branch_id": "branch-2", "q": "fee"}).json()
        assert data["total"] == 1

    def test_query_required(self, client):
        assert client.get("/messages/search", params={"branch_id": BRANCH_ID}).status_code == 422

    def test_wildcards_match_literally(self, client, receive):
        receive("m1", text="Fee paid")
        receive("m2", text="Discount is 10% this term")

        data = client.get("/messages/search", params={"branch_id": BRANCH_ID, "q": "%"}).json()
        assert [hit["message"]["content"] for hit in data["data"]] == ["Discount is 10% this term"]

        data = client.get("/messages/search", params={"branch_id": BRANCH_ID, "q": "_"}).json()
        assert data["total"] == 0
