"""Exceptions raised by the messaging subsystem."""

from typing import Optional


class ChatError(Exception):
    """Base class for messaging errors."""


class SendFailure(ChatError):
    """Message append or summary upsert failed. Safe to retry.

    ``message_id`` is set when the message itself was stored and only the
    summary update failed.
    """

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id


class SubscriptionError(ChatError):
    """A live message subscription lost its underlying listener."""


class ReadFailure(ChatError):
    """A one-shot read failed; the result is unknown, not empty."""


class ConversationNotFound(ChatError):
    """No summary exists for the conversation id."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class InvalidMessage(ChatError, ValueError):
    """The send request is malformed."""


class UnsupportedOperation(ChatError):
    """The active backend does not offer this operation."""


class UpdateFailure(ChatError):
    """A conversation write other than a send failed. Safe to retry."""


class InvalidConversationId(ChatError):
    """The id is not a conversation key of the active backend."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Not a conversation id for this backend: {conversation_id!r}")
        self.conversation_id = conversation_id
