"""
Polling sync client for a chat view.

Keeps a conversation list and the selected conversation's messages fresh by
re-fetching them on timers: the list every 30 seconds, the open thread every
5 seconds. Every fetch is tagged with a sequence number (and, for threads,
the conversation it was made for) so a slow response can never overwrite a
newer one or land in a conversation the viewer has already left.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, List, Optional, Set

import httpx

from school_chat.client import ChatApiClient
from school_chat.errors import ChatError, ValidationError
from school_chat.schemas import ChatMessageResponse, ConversationResponse, SendMessageResponse

logger = logging.getLogger(__name__)

DEFAULT_LIST_INTERVAL = 30.0
DEFAULT_THREAD_INTERVAL = 5.0


class ChatPoller:
    """
    Conversation list and thread state for one viewer.

    Attributes:
        conversations: Latest conversation list page
        messages: Latest messages of the selected conversation, oldest first
        list_error / thread_error: Set when the initial fetch of that view
            failed, or when the server reported not-found / inactive
        selected_id: Id of the open conversation, if any
    """

    def __init__(
        self,
        api: ChatApiClient,
        branch_id: str,
        list_interval: float = DEFAULT_LIST_INTERVAL,
        thread_interval: float = DEFAULT_THREAD_INTERVAL,
        page_size: int = 50,
        participant_type: Optional[str] = None,
        search: Optional[str] = None,
    ):
        self.api = api
        self.branch_id = branch_id
        self.list_interval = list_interval
        self.thread_interval = thread_interval
        self.page_size = page_size
        self.participant_type = participant_type
        self.search = search

        self.conversations: List[ConversationResponse] = []
        self.messages: List[ChatMessageResponse] = []
        self.list_error: Optional[Exception] = None
        self.thread_error: Optional[Exception] = None
        self.selected_id: Optional[str] = None

        self._list_seq = 0
        self._thread_seq = 0
        self._list_loaded = False
        self._thread_loaded = False
        self._acknowledging: Set[str] = set()
        self._list_task: Optional[asyncio.Task] = None
        self._thread_task: Optional[asyncio.Task] = None

    @property
    def selected_conversation(self) -> Optional[ConversationResponse]:
        for conversation in self.conversations:
            if conversation.id == self.selected_id:
                return conversation
        return None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Fetch the conversation list once, then keep it fresh on a timer."""
        await self.refresh_conversations()
        if self._list_task is None:
            self._list_task = asyncio.create_task(self._poll(self.list_interval, self.refresh_conversations))

    async def close(self) -> None:
        """Cancel all timers. In-flight responses are dropped."""
        self._list_seq += 1
        self._thread_seq += 1
        await _cancel(self._list_task)
        await _cancel(self._thread_task)
        self._list_task = None
        self._thread_task = None

    async def __aenter__(self) -> "ChatPoller":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Viewer actions
    # -------------------------------------------------------------------------

    async def select(self, conversation_id: str) -> None:
        """
        Open a conversation: acknowledge it once, refresh the list and thread
        right away, then poll the thread. Re-selecting the open conversation
        does nothing.
        """
        if conversation_id == self.selected_id:
            return

        await _cancel(self._thread_task)
        self._thread_task = None
        self.selected_id = conversation_id
        self.messages = []
        self.thread_error = None
        self._thread_loaded = False
        self._thread_seq += 1

        logger.info(f"Conversation {conversation_id} selected")
        await self._acknowledge(conversation_id)
        await self.refresh_conversations()
        await self.refresh_thread()

        if self.selected_id == conversation_id:
            self._thread_task = asyncio.create_task(self._poll(self.thread_interval, self.refresh_thread))

    async def deselect(self) -> None:
        await _cancel(self._thread_task)
        self._thread_task = None
        self._thread_seq += 1
        self.selected_id = None
        self.messages = []
        self.thread_error = None

    async def send(self, content: str, message_type: str = "TEXT") -> SendMessageResponse:
        """
        Send a message to the open conversation, then refresh the thread and
        the list. Errors from the send itself propagate to the caller.
        """
        if self.selected_id is None:
            raise ValidationError("No conversation selected")

        result = await self.api.send_message(self.selected_id, content, message_type)
        if result.warning:
            logger.warning(f"Send to {self.selected_id}: {result.warning}")
        await self.refresh_thread()
        await self.refresh_conversations()
        return result

    # -------------------------------------------------------------------------
    # Fetches
    # -------------------------------------------------------------------------

    async def refresh_conversations(self) -> None:
        self._list_seq += 1
        seq = self._list_seq
        try:
            page = await self.api.list_conversations(
                self.branch_id,
                participant_type=self.participant_type,
                search=self.search,
            )
        except ChatError as e:
            if seq == self._list_seq:
                self.list_error = e
            return
        except httpx.HTTPError as e:
            if seq != self._list_seq:
                return
            if self._list_loaded:
                logger.warning(f"Conversation list refresh failed, retrying next tick: {e}")
            else:
                self.list_error = e
            return

        if seq != self._list_seq:
            logger.debug(f"Dropping stale conversation list response #{seq}")
            return

        self.conversations = page.data
        self.list_error = None
        self._list_loaded = True

        # The open conversation is being viewed, so new messages in it are read
        selected = self.selected_conversation
        if selected is not None and selected.unread_count > 0:
            await self._acknowledge(selected.id)

    async def refresh_thread(self) -> None:
        conversation_id = self.selected_id
        if conversation_id is None:
            return

        self._thread_seq += 1
        seq = self._thread_seq
        try:
            page = await self.api.get_messages(conversation_id, limit=self.page_size)
        except ChatError as e:
            if self._is_current_thread(seq, conversation_id):
                self.thread_error = e
            return
        except httpx.HTTPError as e:
            if not self._is_current_thread(seq, conversation_id):
                return
            if self._thread_loaded:
                logger.warning(f"Thread refresh for {conversation_id} failed, retrying next tick: {e}")
            else:
                self.thread_error = e
            return

        if not self._is_current_thread(seq, conversation_id):
            logger.debug(f"Dropping stale thread response #{seq} for {conversation_id}")
            return

        self.messages = page.data
        self.thread_error = None
        self._thread_loaded = True

    def _is_current_thread(self, seq: int, conversation_id: str) -> bool:
        return seq == self._thread_seq and conversation_id == self.selected_id

    async def _acknowledge(self, conversation_id: str) -> None:
        # One mark_read in flight per conversation
        if conversation_id in self._acknowledging:
            return

        self._acknowledging.add(conversation_id)
        try:
            receipt = await self.api.mark_read(conversation_id)
        except ChatError as e:
            if conversation_id == self.selected_id:
                self.thread_error = e
            return
        except httpx.HTTPError as e:
            logger.warning(f"Marking {conversation_id} read failed: {e}")
            return
        finally:
            self._acknowledging.discard(conversation_id)

        self.conversations = [
            c.model_copy(update={"unread_count": receipt.unread_count}) if c.id == conversation_id else c
            for c in self.conversations
        ]

    async def _poll(self, interval: float, fetch: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fetch()
            except Exception:
                # Keep the timer alive; the next tick retries
                logger.exception(f"Poll via {fetch.__name__} failed")


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
