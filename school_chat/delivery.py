"""
Outbound delivery channels for chat messages.

The send pipeline persists a message first and only then hands it to a
channel; a channel failure is reported as DeliveryError and never undoes the
local write.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, NamedTuple, Optional

import httpx

from school_chat.config import settings
from school_chat.errors import DeliveryError
from school_chat.models import Direction
from school_chat.utils import parse_timestamp

logger = logging.getLogger(__name__)


class DeliveryChannel:
    """Interface for sending text and template messages to a participant's phone."""

    name = "base"

    async def send_text(self, to: str, body: str) -> Optional[str]:
        """
        Send a text message.

        Returns:
            Provider message id, or None when the channel does not deliver

        Raises:
            DeliveryError: the provider rejected the message or was unreachable
        """
        raise NotImplementedError

    async def send_template(self, to: str, template_name: str, language: str, parameters: List[str]) -> Optional[str]:
        """Send an approved template with its body parameters, in declared order."""
        raise NotImplementedError


class NullChannel(DeliveryChannel):
    """Used when no provider is configured: messages stay local."""

    name = "null"

    async def send_text(self, to: str, body: str) -> Optional[str]:
        logger.info(f"Outbound channel not configured, skipping delivery to {to}")
        return None

    async def send_template(self, to: str, template_name: str, language: str, parameters: List[str]) -> Optional[str]:
        logger.info(f"Outbound channel not configured, skipping template {template_name} to {to}")
        return None


class WhatsAppCloudChannel(DeliveryChannel):
    """
    Meta WhatsApp Cloud API channel.

    Posts to {base_url}/{api_version}/{phone_number_id}/messages with a bearer
    token and returns the wamid assigned by Meta.
    """

    name = "whatsapp"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    async def send_text(self, to: str, body: str) -> Optional[str]:
        return await self._post(to, "text", {"preview_url": False, "body": body})

    async def send_template(self, to: str, template_name: str, language: str, parameters: List[str]) -> Optional[str]:
        template = {"name": template_name, "language": {"code": language}}
        if parameters:
            template["components"] = [
                {"type": "body", "parameters": [{"type": "text", "text": value} for value in parameters]}
            ]
        return await self._post(to, "template", template)

    async def _post(self, to: str, message_type: str, content: dict) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),
            "type": message_type,
            message_type: content,
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}

        logger.debug(f"Posting WhatsApp {message_type} message to {self.messages_url} for {to}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.messages_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"WhatsApp API request failed: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(
                f"WhatsApp API returned {response.status_code}: {_error_message(response)}"
            )

        try:
            messages = response.json().get("messages") or []
        except ValueError as e:
            raise DeliveryError(f"WhatsApp API returned invalid JSON: {e}") from e
        if not messages or not messages[0].get("id"):
            raise DeliveryError("WhatsApp API response did not include a message id")

        provider_id = messages[0]["id"]
        logger.info(f"WhatsApp accepted message for {to}: {provider_id}")
        return provider_id


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return response.text[:200]
    return error.get("message") or response.text[:200]


@lru_cache()
def get_delivery_channel() -> DeliveryChannel:
    """
    Channel built from settings; cached for the process lifetime.
    Used as a FastAPI dependency so tests can override it.
    """
    if settings.WHATSAPP_ACCESS_TOKEN and settings.WHATSAPP_PHONE_NUMBER_ID:
        logger.info("Using WhatsApp Cloud API delivery channel")
        return WhatsAppCloudChannel(
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            api_version=settings.WHATSAPP_API_VERSION,
            base_url=settings.WHATSAPP_API_BASE_URL,
            timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )
    logger.info("WhatsApp credentials not configured, outbound delivery disabled")
    return NullChannel()


# =============================================================================
# Messaging window
# =============================================================================

class MessageWindow(NamedTuple):
    can_send_freeform: bool
    reason: str
    last_incoming_message_at: Optional[str] = None
    hours_remaining: Optional[float] = None


def check_message_window(
    last_message_at: Optional[str],
    last_message_from: Optional[str],
    now: Optional[datetime] = None,
    window_hours: Optional[int] = None,
) -> MessageWindow:
    """
    Whether a freeform reply is deliverable under WhatsApp's session rules.

    Only an incoming message opens the window; it stays open for
    MESSAGE_WINDOW_HOURS after that message. Outside it the provider only
    accepts approved templates.
    """
    window_hours = window_hours if window_hours is not None else settings.MESSAGE_WINDOW_HOURS
    now = now or datetime.now(timezone.utc)

    if not last_message_at or not last_message_from:
        return MessageWindow(
            False, "No previous conversation. Use a template message to initiate contact."
        )

    if last_message_from != Direction.INCOMING.value:
        return MessageWindow(
            False, "Last message was outgoing. Wait for the participant to respond or use a template message."
        )

    elapsed_hours = (now - parse_timestamp(last_message_at)).total_seconds() / 3600
    if elapsed_hours < window_hours:
        return MessageWindow(
            True,
            f"Within {window_hours}-hour window from last incoming message",
            last_message_at,
            round(max(0.0, window_hours - elapsed_hours), 1),
        )

    return MessageWindow(
        False,
        f"{window_hours}-hour window expired. Use a template message to re-engage.",
        last_message_at,
    )
