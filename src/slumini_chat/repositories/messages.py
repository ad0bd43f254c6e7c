"""Append-only message log backed by a document store."""

from typing import Any, Dict, List, Optional

import structlog

from ..domain.errors import SubscriptionError
from ..domain.models import Message, Role
from ..stores.base import SERVER_TIMESTAMP, Document, DocumentStore, OrderBy, Subscription
from .base import MessagesCallback, SubscriptionErrorCallback

logger = structlog.get_logger()

CONVERSATIONS = "conversations"
MESSAGES = "messages"

# Equal timestamps fall back to the store's insertion sequence
MESSAGE_ORDER = (OrderBy("timestamp"),)


def messages_collection(conversation_id: str) -> str:
    return f"{CONVERSATIONS}/{conversation_id}/{MESSAGES}"


def message_from_document(conversation_id: str, document: Document) -> Message:
    data = document.data
    return Message(
        id=document.id,
        conversation_id=conversation_id,
        sender_id=data["sender_id"],
        sender_name=data.get("sender_name", ""),
        sender_role=Role(data["sender_role"]),
        body=data["message"],
        created_at=data["timestamp"],
        sequence=document.sequence,
        read=data.get("read", False),
        recipient_id=data.get("recipient_id"),
        recipient_name=data.get("recipient_name"),
    )


class MessageLog:
    """Per-conversation ordered message log with live read access."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        sender_name: str,
        sender_role: Role,
        body: str,
        recipient_id: Optional[str] = None,
        recipient_name: Optional[str] = None,
    ) -> Message:
        """Write a new unread message; the store assigns its timestamp."""
        data: Dict[str, Any] = {
            "sender_id": sender_id,
            "sender_name": sender_name,
            "sender_role": sender_role.value,
            "message": body,
            "timestamp": SERVER_TIMESTAMP,
            "read": False,
            "recipient_id": recipient_id,
            "recipient_name": recipient_name,
        }
        document = await self._store.add(messages_collection(conversation_id), data)
        message = message_from_document(conversation_id, document)
        logger.info(
            "message_appended",
            conversation_id=conversation_id,
            message_id=message.id,
            sender_role=sender_role.value,
        )
        return message

    async def list(self, conversation_id: str) -> List[Message]:
        documents = await self._store.query(messages_collection(conversation_id), order_by=MESSAGE_ORDER)
        return [message_from_document(conversation_id, d) for d in documents]

    async def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> Subscription:
        """Call ``on_update`` with the whole ordered log on every change."""

        def deliver(documents: List[Document]) -> None:
            on_update([message_from_document(conversation_id, d) for d in documents])

        def fail(error: Exception) -> None:
            logger.error("message_subscription_failed", conversation_id=conversation_id, error=str(error))
            if on_error is not None:
                on_error(SubscriptionError(f"Subscription to {conversation_id} failed: {error}"))

        subscription = await self._store.watch(
            messages_collection(conversation_id),
            deliver,
            order_by=MESSAGE_ORDER,
            on_error=fail,
        )
        logger.info("message_subscription_started", conversation_id=conversation_id)
        return subscription
