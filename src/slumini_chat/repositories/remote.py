"""Conversation repository backed by a shared document store."""

from typing import List, Optional

import structlog

from ..domain.errors import ReadFailure, SendFailure, UnsupportedOperation, UpdateFailure
from ..domain.identity import resolve_conversation_id
from ..domain.models import Conversation, Message, Role
from ..stores.base import DocumentStore, StoreError, Subscription
from .base import ConversationRepository, MessagesCallback, SubscriptionErrorCallback
from .messages import MessageLog
from .summaries import ConversationSummaries

logger = structlog.get_logger()


class RemoteRepository(ConversationRepository):
    """Message log plus summary maintainer over one document store.

    A send writes the message first and the summary second. There is no
    transaction around the pair: if the summary write fails the message stays
    stored and the summary is stale until the next send or a reconcile pass.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.messages = MessageLog(store)
        self.summaries = ConversationSummaries(store)
        logger.info("repository_initialized", backend="remote")

    def resolve_conversation_id(self, student_id: str, alumni_id: str) -> str:
        return resolve_conversation_id(student_id, alumni_id)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_name: str,
        sender_role: Role,
        body: str,
        recipient_id: str,
        recipient_name: str,
    ) -> str:
        """Append a message and upsert the conversation summary."""
        try:
            message = await self.messages.append(
                conversation_id, sender_id, sender_name, sender_role, body,
                recipient_id, recipient_name,
            )
        except (StoreError, ValueError) as e:
            logger.error("message_append_failed", conversation_id=conversation_id, error=str(e))
            raise SendFailure("Failed to send message") from e

        try:
            await self.summaries.record_send(message, recipient_id, recipient_name)
        except (StoreError, ValueError) as e:
            logger.error(
                "summary_upsert_failed",
                conversation_id=conversation_id,
                message_id=message.id,
                error=str(e),
            )
            raise SendFailure("Failed to update conversation", message_id=message.id) from e

        return message.id

    async def list_messages(self, conversation_id: str) -> List[Message]:
        try:
            return await self.messages.list(conversation_id)
        except (StoreError, ValueError) as e:
            logger.error("list_messages_failed", conversation_id=conversation_id, error=str(e))
            raise ReadFailure("Failed to fetch messages") from e

    async def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> Subscription:
        return await self.messages.subscribe(conversation_id, on_update, on_error)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            return await self.summaries.get(conversation_id)
        except (StoreError, ValueError) as e:
            logger.error("get_conversation_failed", conversation_id=conversation_id, error=str(e))
            raise ReadFailure("Failed to fetch conversation") from e

    async def list_conversations(self, user_id: str, role: Role) -> List[Conversation]:
        try:
            return await self.summaries.list_for_user(user_id, role)
        except (StoreError, ValueError) as e:
            logger.error("list_conversations_failed", user_id=user_id, role=role.value, error=str(e))
            raise ReadFailure("Failed to fetch conversations") from e

    async def mark_read(self, conversation_id: str, role: Role) -> None:
        try:
            await self.summaries.mark_read(conversation_id, role)
        except (StoreError, ValueError) as e:
            logger.error("mark_read_failed", conversation_id=conversation_id, role=role.value, error=str(e))
            raise UpdateFailure("Failed to mark conversation read") from e

    async def clear_conversation(self, conversation_id: str) -> None:
        raise UnsupportedOperation("Conversations in the shared store are never deleted")
