"""Domain models for the messaging subsystem."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Which side of a student/alumni conversation a participant is on."""

    STUDENT = "student"
    ALUMNI = "alumni"

    @property
    def counterpart(self) -> "Role":
        return Role.ALUMNI if self is Role.STUDENT else Role.STUDENT


class Participant(BaseModel):
    """One side of a send, as described by the caller."""

    id: str = Field(min_length=1)
    name: str = ""
    role: Role


class Participants(BaseModel):
    """Identity and display names of both parties."""

    student_id: str
    student_name: str = ""
    alumni_id: str
    alumni_name: str = ""


class UnreadCount(BaseModel):
    """Per-role unread counters."""

    student: int = Field(default=0, ge=0)
    alumni: int = Field(default=0, ge=0)


class Message(BaseModel):
    """Message model."""

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str = ""
    sender_role: Role
    body: str
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0  # store-assigned, breaks timestamp ties
    read: bool = False
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None


class Conversation(BaseModel):
    """Denormalized summary of a conversation."""

    id: str
    participants: Participants
    last_message: str = ""
    last_message_at: Optional[datetime] = None
    last_message_sender: str = ""
    last_message_id: Optional[str] = None
    unread_count: UnreadCount = Field(default_factory=UnreadCount)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LocalMessage(BaseModel):
    """Record kept by the local fallback chat."""

    id: str
    sender: Role
    text: str
    timestamp: int  # epoch milliseconds
