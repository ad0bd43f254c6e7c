"""Conversation repository kept entirely in client-local storage.

Each conversation is one storage key holding the JSON list of its messages.
There are no unread counters and nothing is durable beyond the local storage
area. Views of the same key reload when this window sends or clears, and
when another window changes the key.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from pydantic import TypeAdapter

from ..domain.errors import InvalidConversationId, ReadFailure, SendFailure, SubscriptionError, UpdateFailure
from ..domain.identity import local_conversation_key, parse_local_conversation_key
from ..domain.models import Conversation, LocalMessage, Message, Participants, Role
from ..stores.base import Subscription
from ..stores.local import LocalStorage, StorageEvent
from .base import ConversationRepository, MessagesCallback, SubscriptionErrorCallback

logger = structlog.get_logger()

_RECORDS = TypeAdapter(List[LocalMessage])


def _now_ms() -> int:
    return int(time.time() * 1000)


def _split_key(key: str) -> Tuple[int, int]:
    ids = parse_local_conversation_key(key)
    if ids is None:
        raise InvalidConversationId(key)
    return ids


class _LocalSubscription(Subscription):
    def __init__(
        self,
        repository: "LocalRepository",
        key: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback],
    ) -> None:
        self.key = key
        self._repository = repository
        self._on_update = on_update
        self._on_error = on_error
        self._storage_handle: Optional[Subscription] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        self._storage_handle = self._repository.storage.add_listener(
            self._repository.window_id, self._on_storage_event
        )
        self._repository._update_listeners.append(self.reload)
        self.reload()

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self.reload in self._repository._update_listeners:
            self._repository._update_listeners.remove(self.reload)
        if self._storage_handle is not None:
            self._storage_handle.unsubscribe()

    def reload(self) -> None:
        if not self._active:
            return
        try:
            messages = self._repository._read(self.key)
        except ValueError as e:
            logger.error("local_subscription_failed", key=self.key, error=str(e))
            self.unsubscribe()
            if self._on_error is not None:
                self._on_error(SubscriptionError(f"Local chat {self.key} is unreadable: {e}"))
            return
        self._on_update(messages)

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key == self.key:
            self.reload()


class LocalRepository(ConversationRepository):
    """Fallback chat over a local storage area, one instance per window."""

    def __init__(self, storage: LocalStorage, window_id: Optional[str] = None) -> None:
        self.storage = storage
        self.window_id = window_id or uuid4().hex
        self._update_listeners: List[Callable[[], None]] = []
        logger.info("repository_initialized", backend="local", window_id=self.window_id)

    def resolve_conversation_id(self, student_id: str, alumni_id: str) -> str:
        return local_conversation_key(alumni_id, student_id)

    def _load(self, key: str) -> List[LocalMessage]:
        raw = self.storage.get_item(key)
        if raw is None:
            return []
        return _RECORDS.validate_json(raw)

    def _read(self, key: str) -> List[Message]:
        alumni_id, student_id = _split_key(key)
        messages = []
        for index, record in enumerate(self._load(key), start=1):
            alumni_sent = record.sender is Role.ALUMNI
            messages.append(Message(
                id=record.id,
                conversation_id=key,
                sender_id=str(alumni_id if alumni_sent else student_id),
                sender_role=record.sender,
                body=record.text,
                created_at=datetime.fromtimestamp(record.timestamp / 1000, tz=timezone.utc),
                sequence=index,
                recipient_id=str(student_id if alumni_sent else alumni_id),
            ))
        return messages

    def _broadcast_update(self) -> None:
        for listener in list(self._update_listeners):
            listener()

    def _summary(self, key: str, records: List[LocalMessage]) -> Conversation:
        alumni_id, student_id = _split_key(key)
        last = records[-1]
        return Conversation(
            id=key,
            participants=Participants(student_id=str(student_id), alumni_id=str(alumni_id)),
            last_message=last.text,
            last_message_at=datetime.fromtimestamp(last.timestamp / 1000, tz=timezone.utc),
            last_message_sender=str(alumni_id if last.sender is Role.ALUMNI else student_id),
            last_message_id=last.id,
            created_at=datetime.fromtimestamp(records[0].timestamp / 1000, tz=timezone.utc),
            updated_at=datetime.fromtimestamp(last.timestamp / 1000, tz=timezone.utc),
        )

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
        """Append to the stored list and notify this window's views."""
        _split_key(conversation_id)
        try:
            records = self._load(conversation_id)
            timestamp = _now_ms()
            if records and timestamp < records[-1].timestamp:
                timestamp = records[-1].timestamp
            record = LocalMessage(id=uuid4().hex, sender=sender_role, text=body, timestamp=timestamp)
            records.append(record)
            self.storage.set_item(
                conversation_id, _RECORDS.dump_json(records).decode("utf-8"), source=self.window_id
            )
        except (OSError, ValueError) as e:
            logger.error("local_send_failed", key=conversation_id, error=str(e))
            raise SendFailure("Failed to send message") from e

        logger.info("local_message_sent", key=conversation_id, sender_role=sender_role.value)
        self._broadcast_update()
        return record.id

    async def list_messages(self, conversation_id: str) -> List[Message]:
        _split_key(conversation_id)
        try:
            return self._read(conversation_id)
        except ValueError as e:
            logger.error("local_read_failed", key=conversation_id, error=str(e))
            raise ReadFailure("Failed to load messages") from e

    async def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: Optional[SubscriptionErrorCallback] = None,
    ) -> Subscription:
        _split_key(conversation_id)
        subscription = _LocalSubscription(self, conversation_id, on_update, on_error)
        subscription.start()
        return subscription

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        _split_key(conversation_id)
        try:
            records = self._load(conversation_id)
            return self._summary(conversation_id, records) if records else None
        except ValueError as e:
            logger.error("local_read_failed", key=conversation_id, error=str(e))
            raise ReadFailure("Failed to load conversation") from e

    async def list_conversations(self, user_id: str, role: Role) -> List[Conversation]:
        try:
            wanted = int(user_id)
        except ValueError:
            return []
        conversations = []
        for key, records in (await self.export_conversations()).items():
            alumni_id, student_id = _split_key(key)
            if (alumni_id if role is Role.ALUMNI else student_id) == wanted and records:
                conversations.append(self._summary(key, records))
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def mark_read(self, conversation_id: str, role: Role) -> None:
        logger.debug("local_mark_read_ignored", key=conversation_id, role=role.value)

    async def clear_conversation(self, conversation_id: str) -> None:
        """Drop the whole stored list for the conversation."""
        _split_key(conversation_id)
        try:
            self.storage.remove_item(conversation_id, source=self.window_id)
        except OSError as e:
            logger.error("local_clear_failed", key=conversation_id, error=str(e))
            raise UpdateFailure("Failed to clear conversation") from e
        logger.info("local_conversation_cleared", key=conversation_id)
        self._broadcast_update()

    async def export_conversations(self) -> Dict[str, List[LocalMessage]]:
        """Return every stored conversation keyed by its storage key."""
        exported: Dict[str, List[LocalMessage]] = {}
        for key in self.storage.keys():
            if parse_local_conversation_key(key) is None:
                continue
            try:
                exported[key] = self._load(key)
            except ValueError as e:
                logger.error("local_read_failed", key=key, error=str(e))
                raise ReadFailure(f"Failed to load {key}") from e
        return exported
