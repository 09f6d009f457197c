from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

# --- inbound frames: {"event": <name>, "data": {...}} ---


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginIn(_Payload):
    user_id: str = Field(min_length=1)
    token: Optional[str] = None


class MessageSendIn(_Payload):
    sender_id: str
    receiver_id: str
    content: str
    conversation_id: Optional[str] = None


class TypingIn(_Payload):
    sender_id: str
    receiver_id: str


class MessageReadIn(_Payload):
    message_id: str
    user_id: str


class FileUploadIn(_Payload):
    sender_id: str
    receiver_id: str
    file_name: str = Field(min_length=1)
    file_data: str
    file_type: Optional[str] = None
    conversation_id: Optional[str] = None


class GroupCreateIn(_Payload):
    creator_id: str
    name: str
    description: Optional[str] = None
    member_ids: List[str] = []


class MessageCreateIn(_Payload):
    receiver_id: str
    content: str
    conversation_id: Optional[str] = None


class DirectConversationIn(_Payload):
    user_id: str = Field(min_length=1)


class LoginEvent(BaseModel):
    event: Literal["user:login"]
    data: LoginIn

    @field_validator("data", mode="before")
    @classmethod
    def _bare_user_id(cls, v: Any):
        # older clients emit the user id on its own
        if isinstance(v, str):
            return {"userId": v}
        return v


class MessageSendEvent(BaseModel):
    event: Literal["message:send"]
    data: MessageSendIn


class TypingEvent(BaseModel):
    event: Literal["typing:start", "typing:stop"]
    data: TypingIn


class MessageReadEvent(BaseModel):
    event: Literal["message:read"]
    data: MessageReadIn


class FileUploadEvent(BaseModel):
    event: Literal["file:upload"]
    data: FileUploadIn


class GroupCreateEvent(BaseModel):
    event: Literal["group:create"]
    data: GroupCreateIn


InboundEvent = Annotated[
    Union[
        LoginEvent,
        MessageSendEvent,
        TypingEvent,
        MessageReadEvent,
        FileUploadEvent,
        GroupCreateEvent,
    ],
    Field(discriminator="event"),
]

inbound_event = TypeAdapter(InboundEvent)


# --- outbound frames ---

USERS_ONLINE = "users:online"
MESSAGE_SENT = "message:sent"
MESSAGE_RECEIVE = "message:receive"
MESSAGE_ERROR = "message:error"
MESSAGE_READ = "message:read"
TYPING_INDICATOR = "typing:indicator"
TYPING_STOPPED = "typing:stopped"
FILE_UPLOAD_ERROR = "file:upload:error"
GROUP_INVITED = "group:invited"
GROUP_CREATED = "group:created"
GROUP_CREATE_ERROR = "group:create:error"
LOGIN_ERROR = "login:error"
ERROR = "error"


def frame(event: str, data: Any) -> dict:
    return {"event": event, "data": jsonable_encoder(data)}


def error_frame(event: str, message: str) -> dict:
    return frame(event, {"error": message})


# --- REST ---


class MessageOut(BaseModel):
    id: str
    sender_id: str
    receiver_id: Optional[str] = None
    conversation_id: Optional[str] = None
    content: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    created_at: datetime


class ConversationOut(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    creator_id: Optional[str] = None
    is_group: bool = False
    created_at: datetime
    role: Optional[str] = None
