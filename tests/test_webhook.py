"""
Tests for the webhook endpoints.

Tests cover:
- Valid signature with message and conversation creation
- Duplicate message handling (idempotency)
- Invalid/missing signature (401)
- Validation errors (422)
- Inactive conversations (409)
- Provider verification handshake and status callbacks
"""

import json

from school_chat import main
from school_chat.delivery import get_delivery_channel
from school_chat.main import app
from tests.conftest import BRANCH_ID, compute_signature, inbound_body, post_signed


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_create_message_success(self, client, receive, conversation_for):
        """First contact creates the conversation with one unread message."""
        response = receive("m1")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        conversation = conversation_for("+919876543210")
        assert conversation is not None
        assert conversation["unread_count"] == 1
        assert conversation["total_message_count"] == 1
        assert conversation["last_message_content"] == "Hello"
        assert conversation["last_message_from"] == "INCOMING"
        assert conversation["is_active"] is True

    def test_duplicate_message_idempotent(self, client, receive, conversation_for):
        """Duplicate message_id returns 200 without storing a second copy."""
        assert receive("m1").status_code == 200
        response = receive("m1")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        conversation = conversation_for("+919876543210")
        assert conversation["total_message_count"] == 1
        assert conversation["unread_count"] == 1

    def test_concurrent_duplicate_reported_as_duplicate(self, client, receive, conversation_for, monkeypatch):
        """A duplicate that slips past the lookup still returns 200 and stores nothing."""
        assert receive("m1").status_code == 200

        # Both deliveries saw no stored message before either inserted
        monkeypatch.setattr(main, "get_message_by_provider_id", lambda db, message_id: None)
        response = receive("m1", text="Hello again")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        conversation = conversation_for("+919876543210")
        assert conversation["total_message_count"] == 1
        assert conversation["unread_count"] == 1
        assert conversation["last_message_content"] == "Hello"

    def test_multiple_messages_same_participant(self, client, receive, conversation_for):
        """Messages from one phone land in one conversation."""
        receive("m1", text="Hello")
        receive("m2", text="Are you there?")
        receive("m3", text="Test")

        conversation = conversation_for("+919876543210")
        assert conversation["unread_count"] == 3
        assert conversation["total_message_count"] == 3
        assert conversation["last_message_content"] == "Test"

        listing = client.get("/conversations", params={"branch_id": BRANCH_ID}).json()
        assert listing["total"] == 1

    def test_different_participants_get_separate_conversations(self, client, receive):
        receive("m1", phone="+919876543210")
        receive("m2", phone="+911234567890")

        listing = client.get("/conversations", params={"branch_id": BRANCH_ID}).json()
        assert listing["total"] == 2

    def test_media_message_without_text_gets_placeholder(self, client, receive, conversation_for):
        """Media without a caption is stored with a readable placeholder."""
        response = receive(
            "m_img",
            text=None,
            message_type="IMAGE",
            media_url="https://example.com/image.jpg",
            media_type="image/jpeg",
        )
        assert response.status_code == 200

        conversation = conversation_for("+919876543210")
        assert conversation["last_message_content"] == "[Image]"

        messages = client.get(f"/conversations/{conversation['id']}/messages").json()["data"]
        assert messages[0]["message_type"] == "IMAGE"
        assert messages[0]["media_url"] == "https://example.com/image.jpg"
        assert messages[0]["status"] is None

    def test_participant_details_refreshed(self, client, receive, conversation_for):
        """Resolved participant details on a later message update the conversation."""
        receive("m1")
        receive("m2", participant_name="Asha Verma", participant_type="parent", participant_id="parent-7")

        conversation = conversation_for("+919876543210")
        assert conversation["participant_name"] == "Asha Verma"
        assert conversation["participant_type"] == "parent"
        assert conversation["participant_id"] == "parent-7"


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client):
        """Test request without X-Signature header returns 401."""
        response = client.post(
            "/webhook",
            content=inbound_body("m1"),
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client):
        """Test request with wrong signature returns 401."""
        response = client.post(
            "/webhook",
            content=inbound_body("m1"),
            headers={
                "Content-Type": "application/json",
                "X-Signature": "invalid_signature_123"
            }
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_signature_with_different_body(self, client):
        """Test signature computed for different body returns 401."""
        signature = compute_signature(inbound_body("m1"))

        response = client.post(
            "/webhook",
            content=inbound_body("m2", text="Different"),
            headers={
                "Content-Type": "application/json",
                "X-Signature": signature
            }
        )

        assert response.status_code == 401

    def test_signature_with_different_secret(self, client, conversation_for):
        """Test signature computed with different secret returns 401 and stores nothing."""
        body = inbound_body("m1")

        response = client.post(
            "/webhook",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_signature(body, "wrong_secret")
            }
        )

        assert response.status_code == 401
        assert conversation_for("+919876543210") is None


class TestWebhookValidationErrors:
    """Test webhook validation errors (422)."""

    def test_invalid_json(self, client):
        """Test invalid JSON returns 422."""
        response = post_signed(client, "/webhook", "not valid json")
        assert response.status_code == 422

    def test_missing_message_id(self, client):
        body = json.dumps({"branch_id": BRANCH_ID, "from": "+919876543210", "ts": "2025-01-15T10:00:00Z"})
        assert post_signed(client, "/webhook", body).status_code == 422

    def test_missing_branch_id(self, client):
        body = json.dumps({"message_id": "m1", "from": "+919876543210", "ts": "2025-01-15T10:00:00Z"})
        assert post_signed(client, "/webhook", body).status_code == 422

    def test_invalid_from_format_no_plus(self, client, receive):
        """Test 'from' without + prefix returns 422."""
        assert receive("m1", phone="919876543210").status_code == 422

    def test_invalid_from_format_with_letters(self, client, receive):
        assert receive("m1", phone="+91abc543210").status_code == 422

    def test_invalid_timestamp_no_z_suffix(self, client, receive):
        """Test timestamp without Z suffix returns 422."""
        assert receive("m1", ts="2025-01-15T10:00:00").status_code == 422

    def test_invalid_timestamp_format(self, client, receive):
        assert receive("m1", ts="not-a-timestamp").status_code == 422

    def test_text_too_long(self, client, receive):
        """Test text exceeding 4096 characters returns 422."""
        assert receive("m1", text="x" * 4097).status_code == 422

    def test_unknown_message_type(self, client, receive):
        assert receive("m1", message_type="STICKER").status_code == 422


class TestWebhookInactiveConversation:
    """Inbound messages for a deactivated conversation are rejected."""

    def test_inactive_conversation_returns_409(self, client, receive, conversation_for):
        receive("m1")
        conversation = conversation_for("+919876543210")
        client.patch(f"/conversations/{conversation['id']}", json={"is_active": False})

        response = receive("m2", text="Anyone?")

        assert response.status_code == 409
        after = conversation_for("+919876543210")
        assert after["total_message_count"] == 1
        assert after["unread_count"] == 1

    def test_reactivated_conversation_accepts_messages(self, client, receive, conversation_for):
        receive("m1")
        conversation = conversation_for("+919876543210")
        client.patch(f"/conversations/{conversation['id']}", json={"is_active": False})
        client.patch(f"/conversations/{conversation['id']}", json={"is_active": True})

        assert receive("m2").status_code == 200
        assert conversation_for("+919876543210")["total_message_count"] == 2


class TestWebhookVerification:
    """Provider subscription handshake."""

    def test_valid_token_echoes_challenge(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token_forbidden(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert response.status_code == 403


class TestStatusWebhook:
    """Delivery status callbacks for outgoing messages."""

    def _send_outgoing(self, client, receive, conversation_for, provider_id="wamid.out1"):
        receive("m1")
        conversation = conversation_for("+919876543210")

        class FixedChannel:
            name = "fixed"

            async def send_text(self, to, body):
                return provider_id

        app.dependency_overrides[get_delivery_channel] = lambda: FixedChannel()
        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": "Reply"})
        assert response.status_code == 201
        return conversation["id"], response.json()["message"]["id"]

    def _status(self, client, message_id, status, ts="2025-01-15T11:00:00Z"):
        body = json.dumps({"message_id": message_id, "status": status, "ts": ts})
        return post_signed(client, "/webhook/status", body)

    def _message(self, client, conversation_id, message_id):
        messages = client.get(f"/conversations/{conversation_id}/messages").json()["data"]
        return next(m for m in messages if m["id"] == message_id)

    def test_status_advances(self, client, receive, conversation_for):
        conversation_id, message_id = self._send_outgoing(client, receive, conversation_for)

        assert self._status(client, "wamid.out1", "delivered").status_code == 200
        assert self._message(client, conversation_id, message_id)["status"] == "delivered"

        assert self._status(client, "wamid.out1", "read").status_code == 200
        message = self._message(client, conversation_id, message_id)
        assert message["status"] == "read"
        assert message["read_at"] == "2025-01-15T11:00:00.000000Z"

    def test_status_never_regresses(self, client, receive, conversation_for):
        conversation_id, message_id = self._send_outgoing(client, receive, conversation_for)

        self._status(client, "wamid.out1", "read")
        self._status(client, "wamid.out1", "delivered")

        assert self._message(client, conversation_id, message_id)["status"] == "read"

    def test_failed_status_leaves_message_untouched(self, client, receive, conversation_for):
        conversation_id, message_id = self._send_outgoing(client, receive, conversation_for)

        assert self._status(client, "wamid.out1", "failed").status_code == 200
        assert self._message(client, conversation_id, message_id)["status"] == "sent"

    def test_unknown_message_acknowledged(self, client):
        assert self._status(client, "wamid.unknown", "delivered").status_code == 200

    def test_status_requires_signature(self, client):
        body = json.dumps({"message_id": "wamid.out1", "status": "read"})
        response = client.post("/webhook/status", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 401
