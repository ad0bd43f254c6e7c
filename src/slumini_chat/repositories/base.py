"""Base repository interface."""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, List, Optional, Union

from ..domain.errors import SubscriptionError
from ..domain.models import Conversation, Message, Role
from ..stores.base import Subscription

MessagesCallback = Callable[[List[Message]], None]
SubscriptionErrorCallback = Callable[[SubscriptionError], None]


class ConversationRepository(ABC):
    """Abstract base class for conversation backends."""

    @abstractmethod
    def resolve_conversation_id(self, student_id: str, alumni_id: str) -> str:
        """Return this backend's key for a student/alumni pair."""
        pass

    @abstractmethod
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
        """Append a message and return its id. Raises SendFailure."""
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Get all messages of a conversation, oldest first. Raises ReadFailure."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> Subscription:
        """Deliver the full ordered message list now and on every change."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation summary by id."""
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, role: Role) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def mark_read(self, conversation_id: str, role: Role) -> None:
        """Reset the unread counter of ``role``. Raises UpdateFailure."""
        pass

    @abstractmethod
    async def clear_conversation(self, conversation_id: str) -> None:
        """Delete the whole message history of a conversation."""
        pass

    async def stream_messages(self, conversation_id: str) -> AsyncIterator[List[Message]]:
        """Yield message snapshots until the consumer stops iterating."""
        queue: "asyncio.Queue[Union[List[Message], SubscriptionError]]" = asyncio.Queue()
        subscription = await self.subscribe(conversation_id, queue.put_nowait, queue.put_nowait)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, SubscriptionError):
                    raise item
                yield item
        finally:
            subscription.unsubscribe()
