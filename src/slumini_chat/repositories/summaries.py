"""Denormalized conversation summaries.

One summary document exists per conversation. It is created lazily by the
first send and updated by every later send. A send bumps the recipient's
unread counter and zeroes the sender's; ``mark_read`` zeroes one side.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..domain.errors import ConversationNotFound
from ..domain.models import Conversation, Message, Participants, Role, UnreadCount
from ..stores.base import (
    SERVER_TIMESTAMP,
    AlreadyExists,
    Document,
    DocumentStore,
    FailedPrecondition,
    FieldFilter,
    Increment,
    NotFound,
    OrderBy,
)
from .messages import CONVERSATIONS

logger = structlog.get_logger()


def conversation_path(conversation_id: str) -> str:
    return f"{CONVERSATIONS}/{conversation_id}"


def conversation_from_document(document: Document) -> Conversation:
    data = document.data
    return Conversation(
        id=data.get("conversation_id", document.id),
        participants=Participants(**data["participants"]),
        last_message=data.get("last_message", ""),
        last_message_at=data.get("last_message_at"),
        last_message_sender=data.get("last_message_sender", ""),
        last_message_id=data.get("last_message_id"),
        unread_count=UnreadCount(**data.get("unread_count", {})),
        created_at=data.get("created_at") or document.create_time,
        updated_at=data.get("updated_at") or document.update_time,
    )


def _last_message_fields(message: Message) -> Dict[str, Any]:
    return {
        "last_message": message.body,
        "last_message_at": message.created_at,
        "last_message_sender": message.sender_id,
        "last_message_id": message.id,
        "updated_at": SERVER_TIMESTAMP,
    }


class ConversationSummaries:
    """Maintains conversation summary documents."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        document = await self._store.get(conversation_path(conversation_id))
        if document is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            return None
        return conversation_from_document(document)

    async def record_send(self, message: Message, recipient_id: str, recipient_name: str) -> None:
        """Upsert the summary for a message that has just been appended.

        The recipient's counter goes up by one. Replying counts as having
        read the conversation, so the sender's counter drops to zero.
        """
        path = conversation_path(message.conversation_id)
        recipient_role = message.sender_role.counterpart

        if await self._store.get(path) is None:
            student_sent = message.sender_role is Role.STUDENT
            participants = Participants(
                student_id=message.sender_id if student_sent else recipient_id,
                student_name=message.sender_name if student_sent else recipient_name,
                alumni_id=recipient_id if student_sent else message.sender_id,
                alumni_name=recipient_name if student_sent else message.sender_name,
            )
            unread = {recipient_role.value: 1, message.sender_role.value: 0}
            try:
                await self._store.create(path, {
                    "conversation_id": message.conversation_id,
                    "participants": participants.model_dump(),
                    "unread_count": unread,
                    "created_at": SERVER_TIMESTAMP,
                    **_last_message_fields(message),
                })
                logger.info("conversation_created", conversation_id=message.conversation_id)
                return
            except AlreadyExists:
                # Another first send won the creation; count this one on top
                logger.info("conversation_creation_raced", conversation_id=message.conversation_id)

        await self._store.update(path, {
            **_last_message_fields(message),
            f"unread_count.{recipient_role.value}": Increment(1),
            f"unread_count.{message.sender_role.value}": 0,
        })
        logger.info(
            "conversation_updated",
            conversation_id=message.conversation_id,
            unread_role=recipient_role.value,
        )

    async def mark_read(self, conversation_id: str, role: Role) -> None:
        """Zero the unread counter of ``role``; message read flags are untouched."""
        try:
            await self._store.update(conversation_path(conversation_id), {f"unread_count.{role.value}": 0})
        except NotFound:
            raise ConversationNotFound(conversation_id)
        logger.info("conversation_marked_read", conversation_id=conversation_id, role=role.value)

    async def list_for_user(self, user_id: str, role: Role) -> List[Conversation]:
        documents = await self._store.query(
            CONVERSATIONS,
            where=[FieldFilter(f"participants.{role.value}_id", "==", user_id)],
            order_by=[OrderBy("updated_at", descending=True)],
        )
        return [conversation_from_document(d) for d in documents]

    async def restore(self, conversation_id: str, participants: Participants,
                      last: Message, unread: UnreadCount) -> bool:
        """Create a missing summary; returns False if one appeared meanwhile."""
        try:
            await self._store.create(conversation_path(conversation_id), {
                "conversation_id": conversation_id,
                "participants": participants.model_dump(),
                "unread_count": unread.model_dump(),
                "created_at": SERVER_TIMESTAMP,
                **_last_message_fields(last),
            })
        except AlreadyExists:
            return False
        logger.info("conversation_restored", conversation_id=conversation_id)
        return True

    async def catch_up(self, conversation_id: str, seen: Conversation,
                       last: Message, unread: UnreadCount) -> bool:
        """Overwrite last-message fields and counters with recomputed values.

        ``seen`` is the summary the values were computed from. Nothing is
        written, and False is returned, if the summary changed since then.
        """
        path = conversation_path(conversation_id)
        document = await self._store.get(path)
        if document is None or conversation_from_document(document) != seen:
            logger.info("conversation_catch_up_skipped", conversation_id=conversation_id)
            return False
        try:
            await self._store.update(path, {
                **_last_message_fields(last),
                "unread_count": unread.model_dump(),
            }, last_update_time=document.update_time)
        except FailedPrecondition:
            logger.info("conversation_catch_up_skipped", conversation_id=conversation_id)
            return False
        logger.info(
            "conversation_caught_up",
            conversation_id=conversation_id,
            unread_student=unread.student,
            unread_alumni=unread.alumni,
        )
        return True
