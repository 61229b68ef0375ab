"""
Chat session store.

Holds the user's conversations and the active conversation, merges realtime
message events and reconciles local sends with the server-confirmed copy.
"""

import uuid
from datetime import UTC, datetime

from guestcode_client.errors import GuestCodeClientError
from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.infrastructure.observability.logging import get_logger
from guestcode_client.models.domain.chat_domain import Conversation, Message
from guestcode_client.models.events import MessageRead, NewMessage
from guestcode_client.services.api_client import GuestCodeApiClient

logger = get_logger(__name__)


class ChatServiceError(GuestCodeClientError):
    """Custom exception for chat store operations."""

    def __init__(self, message: str, chat_id: str | None = None, recoverable: bool = True):
        super().__init__(message, recoverable=recoverable)
        self.chat_id = chat_id


class ChatSessionStore:
    """
    Conversation list ordered by most recent activity.

    The active conversation is always the entry of the list with
    ``active_conversation_id``, so a mutation is never applied to one copy
    and missed on the other. ``unread_count`` is derived from the entries.
    """

    def __init__(self, api: GuestCodeApiClient, bus: EventBus, user_id: str):
        self.api = api
        self.user_id = user_id
        self.conversations: list[Conversation] = []
        self.active_conversation_id: str | None = None

        self._unsubscribers = [
            bus.subscribe(NewMessage, self.handle_new_message),
            bus.subscribe(MessageRead, self.handle_message_read),
        ]

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def unread_count(self) -> int:
        return sum(conversation.unread_count for conversation in self.conversations)

    @property
    def active_conversation(self) -> Conversation | None:
        if self.active_conversation_id is None:
            return None
        return self.get_conversation(self.active_conversation_id)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def set_active_conversation(self, conversation_id: str | None) -> Conversation | None:
        if conversation_id is None:
            self.active_conversation_id = None
            return None

        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise ChatServiceError(
                "Conversation not loaded", chat_id=conversation_id, recoverable=False
            )
        self.active_conversation_id = conversation_id
        return conversation

    # ------------------------------------------------------------------
    # Request/response operations
    # ------------------------------------------------------------------

    async def fetch_conversations(self) -> list[Conversation]:
        """
        Load all conversations, dropping the current user from participants.

        Messages held locally but missing from the response (pending sends,
        events that raced the fetch) are kept.
        """
        data = await self.api.list_chats()

        fetched = [
            Conversation.model_validate(item).without_participant(self.user_id)
            for item in data or []
        ]
        for conversation in fetched:
            local = self.get_conversation(conversation.id)
            if local is not None:
                _carry_over_messages(local, conversation)

        self.conversations = fetched
        self._sort()

        if self.active_conversation_id and self.active_conversation is None:
            self.active_conversation_id = None

        logger.info(
            "Conversations fetched",
            count=len(self.conversations),
            unread_count=self.unread_count,
        )
        return self.conversations

    async def create_or_get_conversation(self, other_user_id: str) -> Conversation:
        """Open a private conversation; an already loaded copy is kept as is."""
        data = await self.api.create_chat(other_user_id)
        conversation = Conversation.model_validate(data).without_participant(self.user_id)

        existing = self.get_conversation(conversation.id)
        if existing is not None:
            logger.debug("Conversation already loaded", chat_id=conversation.id)
            return existing

        self.conversations.insert(0, conversation)
        logger.info("Conversation created", chat_id=conversation.id)
        return conversation

    async def send_message(self, content: str) -> Message:
        """
        Send to the active conversation.

        An optimistic entry carrying a client correlation id is appended first
        and replaced in place by the server-confirmed message. On failure the
        optimistic entry is removed again and the error propagates.
        """
        conversation = self.active_conversation
        if conversation is None:
            raise ChatServiceError("No active conversation", recoverable=False)

        chat_id = conversation.id
        client_id = uuid.uuid4().hex
        optimistic = Message(
            sender_id=self.user_id,
            content=content,
            created_at=datetime.now(UTC),
            client_id=client_id,
            pending=True,
        )
        conversation.messages.append(optimistic)

        try:
            data = await self.api.send_message(chat_id, content, client_id=client_id)
        except Exception as e:
            self._drop_pending(chat_id, client_id)
            logger.error(
                "Failed to send message",
                chat_id=chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        confirmed = Message.model_validate(data)
        confirmed.client_id = confirmed.client_id or client_id
        confirmed.pending = False

        # the conversation object may have been replaced by a fetch meanwhile
        conversation = self.get_conversation(chat_id)
        if conversation is None:
            return confirmed

        _reconcile_sent(conversation, confirmed)
        self._touch(conversation, confirmed)
        self._sort()

        logger.debug("Message sent", chat_id=chat_id, message_id=confirmed.id)
        return confirmed

    # ------------------------------------------------------------------
    # Realtime handlers
    # ------------------------------------------------------------------

    def handle_new_message(self, event: NewMessage) -> None:
        conversation = self.get_conversation(event.chat_id)
        if conversation is None:
            logger.debug("Message for unknown conversation dropped", chat_id=event.chat_id)
            return

        message = event.message
        if conversation.has_message(message):
            return

        if message.sender_id == self.user_id:
            # echo of our own send that beat the HTTP response, or a send from another device
            pending = _find_pending(conversation, message)
            if pending is not None:
                conversation.messages[pending] = message.model_copy(
                    update={
                        "client_id": conversation.messages[pending].client_id,
                        "pending": False,
                    }
                )
            else:
                conversation.messages.append(message)
            self._touch(conversation, message)
            self._sort()
            return

        conversation.messages.append(message)
        self._touch(conversation, message)
        if conversation.id != self.active_conversation_id:
            conversation.unread_count += 1
        self._sort()

        logger.debug(
            "Message received",
            chat_id=conversation.id,
            message_id=message.id,
            unread_count=conversation.unread_count,
        )

    def handle_message_read(self, event: MessageRead) -> None:
        if event.user_id != self.user_id:
            return
        conversation = self.get_conversation(event.chat_id)
        if conversation is not None:
            conversation.unread_count = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _touch(self, conversation: Conversation, message: Message) -> None:
        conversation.last_message = message
        conversation.updated_at = message.created_at or datetime.now(UTC)

    def _sort(self) -> None:
        # most recent activity first; equal timestamps ordered by id
        self.conversations.sort(key=lambda c: c.id)
        self.conversations.sort(key=lambda c: c.activity_time(), reverse=True)

    def _drop_pending(self, chat_id: str, client_id: str) -> None:
        conversation = self.get_conversation(chat_id)
        if conversation is None:
            return
        conversation.messages = [
            m for m in conversation.messages if not (m.pending and m.client_id == client_id)
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


def _find_pending(conversation: Conversation, message: Message) -> int | None:
    """Index of the optimistic entry a self-sent server message confirms."""
    for index, existing in enumerate(conversation.messages):
        if not existing.pending:
            continue
        if message.client_id and existing.client_id == message.client_id:
            return index
        if not message.client_id and existing.content == message.content:
            return index
    return None


def _reconcile_sent(conversation: Conversation, confirmed: Message) -> None:
    index = next(
        (
            i
            for i, m in enumerate(conversation.messages)
            if m.client_id and m.client_id == confirmed.client_id
        ),
        None,
    )
    already_held = any(
        m.id == confirmed.id
        for i, m in enumerate(conversation.messages)
        if i != index and confirmed.id
    )

    if index is None:
        if not already_held:
            conversation.messages.append(confirmed)
    elif already_held:
        del conversation.messages[index]
    else:
        conversation.messages[index] = confirmed


def _carry_over_messages(local: Conversation, fetched: Conversation) -> None:
    for message in local.messages:
        if not fetched.has_message(message):
            fetched.messages.append(message)
    if local.last_message is not None and fetched.last_message is None:
        fetched.last_message = local.last_message
