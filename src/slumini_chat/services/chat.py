"""Chat use cases shared by every front end."""

from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import structlog

from ..domain.errors import ConversationNotFound, InvalidMessage
from ..domain.identity import split_by_role
from ..domain.models import Conversation, Message, Participant, Role
from ..repositories.base import ConversationRepository, MessagesCallback, SubscriptionErrorCallback
from ..stores.base import Subscription

logger = structlog.get_logger()


@dataclass(frozen=True)
class SentMessage:
    conversation_id: str
    message_id: str


class ChatService:
    """Validates requests and routes them to the configured repository."""

    def __init__(self, repository: ConversationRepository) -> None:
        self.repository = repository

    def conversation_id(self, first: Participant, second: Participant) -> str:
        """Key for a pair, built from their roles rather than argument order."""
        student, alumni = split_by_role(first, second)
        return self.repository.resolve_conversation_id(student.id, alumni.id)

    async def send(self, sender: Participant, recipient: Participant, body: str) -> SentMessage:
        """Send ``body`` from ``sender`` to ``recipient``.

        Raises InvalidMessage for blank bodies or same-role pairs and
        SendFailure when the backend write fails.
        """
        if not body.strip():
            raise InvalidMessage("Message body is empty")
        conversation_id = self.conversation_id(sender, recipient)
        message_id = await self.repository.send_message(
            conversation_id,
            sender.id,
            sender.name,
            sender.role,
            body,
            recipient.id,
            recipient.name,
        )
        logger.info(
            "message_sent",
            conversation_id=conversation_id,
            message_id=message_id,
            body_length=len(body),
        )
        return SentMessage(conversation_id=conversation_id, message_id=message_id)

    async def history(self, conversation_id: str) -> List[Message]:
        return await self.repository.list_messages(conversation_id)

    async def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> Subscription:
        return await self.repository.subscribe(conversation_id, on_update, on_error)

    def stream(self, conversation_id: str) -> AsyncIterator[List[Message]]:
        return self.repository.stream_messages(conversation_id)

    async def conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def inbox(self, user_id: str, role: Role) -> List[Conversation]:
        return await self.repository.list_conversations(user_id, role)

    async def mark_read(self, conversation_id: str, role: Role) -> None:
        await self.repository.mark_read(conversation_id, role)

    async def clear(self, conversation_id: str) -> None:
        await self.repository.clear_conversation(conversation_id)
