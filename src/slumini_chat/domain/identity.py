"""Conversation key derivation.

Two schemes exist and they are deliberately unrelated:

* the primary store keys a conversation as ``{student_id}_{alumni_id}``;
* the local fallback keys it as ``portal_chat_{alumni_id}_{student_id}`` with
  numeric ids.

Both are ordered by role, never by call order or lexicographically, so the
role of each party has to be known before a key is built.
"""

from typing import Optional, Tuple, Union

from .errors import InvalidMessage
from .models import Participant, Role

SEPARATOR = "_"
LOCAL_KEY_PREFIX = "portal_chat_"


def resolve_conversation_id(student_id: str, alumni_id: str) -> str:
    """Return the primary conversation id for a student/alumni pair."""
    if not student_id or not alumni_id:
        raise ValueError("Both participant ids are required")
    return f"{student_id}{SEPARATOR}{alumni_id}"


def split_by_role(first: Participant, second: Participant) -> Tuple[Participant, Participant]:
    """Return ``(student, alumni)`` regardless of argument order."""
    if first.role is second.role:
        raise InvalidMessage(
            f"A conversation needs one student and one alumni, got two {first.role.value} participants"
        )
    if first.role is Role.STUDENT:
        return first, second
    return second, first


def conversation_id_for(first: Participant, second: Participant) -> str:
    student, alumni = split_by_role(first, second)
    return resolve_conversation_id(student.id, alumni.id)


def _numeric(value: Union[int, str], label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Local chat needs a numeric {label} id, got {value!r}") from None


def local_conversation_key(alumni_id: Union[int, str], student_id: Union[int, str]) -> str:
    """Return the local-storage key for an alumni/student pair."""
    return f"{LOCAL_KEY_PREFIX}{_numeric(alumni_id, 'alumni')}_{_numeric(student_id, 'student')}"


def parse_local_conversation_key(key: str) -> Optional[Tuple[int, int]]:
    """Return ``(alumni_id, student_id)`` or None when ``key`` is not a chat key."""
    if not key.startswith(LOCAL_KEY_PREFIX):
        return None
    parts = key[len(LOCAL_KEY_PREFIX):].split("_")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None
