"""Summary reconciliation.

A send writes the message and then the summary with no transaction around
the pair, so a failure in between leaves the summary missing or stale. The
reconciler recomputes summaries from the message log: it rebuilds missing
ones and replays the summary updates of sends that never landed.

Messages younger than ``settle_seconds`` are ignored so that a send whose
summary update is still in flight is not counted twice.
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import structlog

from ..domain.models import Message, Participants, Role, UnreadCount, utcnow
from ..repositories.messages import CONVERSATIONS, MESSAGES
from ..repositories.remote import RemoteRepository

logger = structlog.get_logger()


def _replay(messages: List[Message], start: UnreadCount) -> UnreadCount:
    """Counters after applying each send's summary update in order."""
    counts = start.model_dump()
    for message in messages:
        counts[message.sender_role.counterpart.value] += 1
        counts[message.sender_role.value] = 0
    return UnreadCount(**counts)


def _participants_from(messages: List[Message]) -> Optional[Participants]:
    known: Dict[Role, Tuple[str, str]] = {}
    for message in messages:
        known.setdefault(message.sender_role, (message.sender_id, message.sender_name))
        if message.recipient_id:
            known.setdefault(message.sender_role.counterpart, (message.recipient_id, message.recipient_name or ""))
    if len(known) < 2:
        return None
    return Participants(
        student_id=known[Role.STUDENT][0],
        student_name=known[Role.STUDENT][1],
        alumni_id=known[Role.ALUMNI][0],
        alumni_name=known[Role.ALUMNI][1],
    )


class SummaryReconciler:
    """Recomputes conversation summaries from their message logs."""

    def __init__(self, repository: RemoteRepository, interval: float = 60.0, settle_seconds: float = 5.0):
        self.interval = interval
        self.settle_seconds = settle_seconds
        self._repository = repository
        self._task: Optional[asyncio.Task] = None
        logger.info("reconciler_initialized", interval=interval, settle_seconds=settle_seconds)

    async def start(self):
        """Start the periodic reconcile task."""
        if self._task is None:
            self._task = asyncio.create_task(self._periodic_reconcile())

    async def stop(self):
        """Stop the periodic reconcile task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _periodic_reconcile(self):
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile_all()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reconcile_error", error=str(e))

    async def reconcile_all(self) -> int:
        """Reconcile every conversation that has messages; returns the number repaired."""
        collections = await self._repository.store.list_collections(f"{CONVERSATIONS}/")
        repaired = 0
        for collection in collections:
            parts = collection.split("/")
            if len(parts) != 3 or parts[2] != MESSAGES:
                continue
            if await self.reconcile(parts[1]):
                repaired += 1
        logger.info("reconcile_pass_complete", conversations=len(collections), repaired=repaired)
        return repaired

    async def reconcile(self, conversation_id: str) -> bool:
        """Bring one summary in line with its log; returns True if it changed."""
        cutoff = utcnow() - timedelta(seconds=self.settle_seconds)
        messages = [
            m for m in await self._repository.messages.list(conversation_id)
            if m.created_at <= cutoff
        ]
        if not messages:
            return False

        summaries = self._repository.summaries
        summary = await summaries.get(conversation_id)
        if summary is None:
            participants = _participants_from(messages)
            if participants is None:
                logger.warning("reconcile_participants_unknown", conversation_id=conversation_id)
                return False
            return await summaries.restore(
                conversation_id, participants, messages[-1], _replay(messages, UnreadCount())
            )

        if summary.last_message_id == messages[-1].id:
            return False

        ids = [m.id for m in messages]
        if summary.last_message_id in ids:
            missed = messages[ids.index(summary.last_message_id) + 1:]
        elif summary.last_message_at is not None:
            missed = [m for m in messages if m.created_at > summary.last_message_at]
        else:
            missed = messages
        if not missed:
            return False

        return await summaries.catch_up(
            conversation_id, summary, missed[-1], _replay(missed, summary.unread_count)
        )
