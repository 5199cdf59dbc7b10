"""
Async HTTP client for the chat API.

Used by the polling sync client and by other services that need to read or
send chat messages without touching the database directly.
"""

import logging
from typing import List, Optional

import httpx
from pydantic import RootModel

from school_chat.errors import ChatError, InactiveConversationError, NotFoundError, ValidationError
from school_chat.schemas import (
    ConversationResponse,
    ConversationsListResponse,
    MarkReadResponse,
    MessagesPageResponse,
    MessageWindowStatusResponse,
    SendMessageResponse,
    SendTemplateResponse,
    TemplateResponse,
)

logger = logging.getLogger(__name__)

TemplateList = RootModel[List[TemplateResponse]]

ERRORS_BY_STATUS = {
    404: NotFoundError,
    409: InactiveConversationError,
    422: ValidationError,
}


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return response.text[:200]
    if isinstance(detail, str):
        return detail
    return str(detail)


class ChatApiClient:
    """
    Thin typed wrapper over the chat HTTP API.

    Pass either a base_url or a ready httpx.AsyncClient (tests hand in one
    bound to the app through httpx.ASGITransport). A client created here is
    closed by aclose(); a client passed in is left to its owner.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        user_id: Optional[str] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url or "", timeout=timeout)
        self.user_id = user_id

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        logger.debug(f"{method} {url} -> {response.status_code}")

        error_cls = ERRORS_BY_STATUS.get(response.status_code)
        if error_cls is not None:
            raise error_cls(_error_detail(response))
        if 400 <= response.status_code < 500:
            raise ChatError(_error_detail(response))
        response.raise_for_status()
        return response

    @staticmethod
    def _parse(response: httpx.Response, model):
        """
        Validate a response body against its schema.

        A body that is not JSON or does not match the schema raises
        httpx.DecodingError, so callers treat it like any other transport failure.
        """
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            raise httpx.DecodingError(
                f"Unexpected response body for {response.request.method} {response.request.url}: {e}",
                request=response.request,
            ) from e

    async def list_conversations(
        self,
        branch_id: str,
        participant_type: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ConversationsListResponse:
        params = {"branch_id": branch_id, "limit": limit, "offset": offset}
        if participant_type:
            params["participant_type"] = participant_type
        if search:
            params["search"] = search
        response = await self._request("GET", "/conversations", params=params)
        return self._parse(response, ConversationsListResponse)

    async def get_conversation(self, conversation_id: str) -> ConversationResponse:
        response = await self._request("GET", f"/conversations/{conversation_id}")
        return self._parse(response, ConversationResponse)

    async def get_messages(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[int] = None,
    ) -> MessagesPageResponse:
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        response = await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)
        return self._parse(response, MessagesPageResponse)

    async def mark_read(self, conversation_id: str) -> MarkReadResponse:
        response = await self._request("POST", f"/conversations/{conversation_id}/read")
        return self._parse(response, MarkReadResponse)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        message_type: str = "TEXT",
    ) -> SendMessageResponse:
        headers = {"X-User-ID": self.user_id} if self.user_id else None
        response = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"content": content, "message_type": message_type},
            headers=headers,
        )
        return self._parse(response, SendMessageResponse)

    async def get_message_window(self, conversation_id: str) -> MessageWindowStatusResponse:
        response = await self._request("GET", f"/conversations/{conversation_id}/window")
        return self._parse(response, MessageWindowStatusResponse)

    async def list_templates(self, branch_id: str) -> List[TemplateResponse]:
        response = await self._request("GET", "/templates", params={"branch_id": branch_id})
        return self._parse(response, TemplateList).root

    async def send_template(
        self,
        conversation_id: str,
        template_id: str,
        variables: Optional[dict] = None,
    ) -> SendTemplateResponse:
        headers = {"X-User-ID": self.user_id} if self.user_id else None
        response = await self._request(
            "POST",
            f"/conversations/{conversation_id}/templates",
            json={"template_id": template_id, "variables": variables or {}},
            headers=headers,
        )
        return self._parse(response, SendTemplateResponse)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
