"""
Error taxonomy for the chat core.

Each error carries the HTTP status the API layer answers with, so route
handlers can let them propagate and a single exception handler renders them.
"""


class ChatError(Exception):
    """Base class for chat errors surfaced to API callers."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ChatError):
    """Malformed input such as empty message content."""

    status_code = 422


class NotFoundError(ChatError):
    """Referenced conversation or message does not exist."""

    status_code = 404


class InactiveConversationError(NotFoundError):
    """
    Mutation attempted on a deactivated conversation.

    A deactivated conversation does not exist for writers, so this is a
    NotFoundError answered with 409 instead of 404.
    """

    status_code = 409


class DeliveryError(ChatError):
    """The outbound channel rejected or failed to deliver a message."""

    status_code = 502


class DuplicateMessageError(ChatError):
    """A message with the same provider message id is already stored."""

    status_code = 409

    def __init__(self, provider_message_id: str, existing_id: int):
        super().__init__(f"Message {provider_message_id} already stored as {existing_id}")
        self.provider_message_id = provider_message_id
        self.existing_id = existing_id
