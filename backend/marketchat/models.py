from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(default_factory=_new_id, primary_key=True)
    sender_id: str = Field(index=True)
    receiver_id: Optional[str] = Field(default=None, index=True)
    conversation_id: Optional[str] = Field(default=None, index=True)
    content: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: Optional[str] = None
    description: Optional[str] = None
    creator_id: Optional[str] = None
    is_group: bool = False
    # "a:b" with sorted user ids, set only on 1:1 conversations
    direct_key: Optional[str] = Field(default=None, unique=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class ConversationMember(SQLModel, table=True):
    __tablename__ = "conversation_members"

    id: str = Field(default_factory=_new_id, primary_key=True)
    conversation_id: str = Field(index=True)
    user_id: str = Field(index=True)
    role: str = "member"
    joined_at: datetime = Field(default_factory=utcnow)


TABLES = {
    "messages": Message,
    "conversations": Conversation,
    "conversation_members": ConversationMember,
}
