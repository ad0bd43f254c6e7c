"""One-time copy of local fallback conversations into the shared store."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import structlog

from ..domain.errors import SendFailure
from ..domain.identity import parse_local_conversation_key
from ..domain.models import Participant, Role
from ..repositories.local import LocalRepository
from ..repositories.remote import RemoteRepository

logger = structlog.get_logger()

# Maps a numeric local id of the given role to the participant it stands for
ParticipantResolver = Callable[[Role, int], Participant]


@dataclass
class MigrationReport:
    conversations: int = 0
    messages: int = 0
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    # Local records already copied, per storage key
    copied: Dict[str, int] = field(default_factory=dict)


async def migrate_local_to_remote(
    local: LocalRepository,
    remote: RemoteRepository,
    resolve_participant: ParticipantResolver,
    resume: Optional[MigrationReport] = None,
) -> MigrationReport:
    """Replay every local conversation into ``remote`` in its stored order.

    Messages are re-sent, so they get fresh store timestamps and raise the
    recipient's unread counter like any other send. Local data is left in
    place; clearing it afterwards is up to the caller.

    A conversation whose send fails is listed in ``failed`` and the rest
    carry on. Passing the returned report back as ``resume`` continues each
    conversation after the records it already copied.
    """
    report = MigrationReport()
    for key, records in (await local.export_conversations()).items():
        alumni_id, student_id = parse_local_conversation_key(key)
        try:
            student = resolve_participant(Role.STUDENT, student_id)
            alumni = resolve_participant(Role.ALUMNI, alumni_id)
        except LookupError as e:
            logger.warning("migration_participant_unknown", key=key, error=str(e))
            report.skipped.append(key)
            continue

        conversation_id = remote.resolve_conversation_id(student.id, alumni.id)
        done = resume.copied.get(key, 0) if resume is not None else 0
        report.copied[key] = done
        try:
            for record in records[done:]:
                sender, recipient = (student, alumni) if record.sender is Role.STUDENT else (alumni, student)
                await remote.send_message(
                    conversation_id,
                    sender.id,
                    sender.name,
                    sender.role,
                    record.text,
                    recipient.id,
                    recipient.name,
                )
                report.copied[key] += 1
                report.messages += 1
        except SendFailure as e:
            if e.message_id is not None:
                # Stored; only its summary update is missing
                report.copied[key] += 1
                report.messages += 1
            logger.error(
                "migration_conversation_failed",
                key=key,
                copied=report.copied[key],
                total=len(records),
                error=str(e),
            )
            report.failed.append(key)
            continue
        report.conversations += 1
        logger.info("conversation_migrated", key=key, conversation_id=conversation_id, messages=len(records) - done)
    return report
