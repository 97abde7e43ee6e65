"""
WebSocket wire protocol.

Every frame, in either direction, is a JSON object {"command": str, "data": object}.
Inbound frames are decoded once, here, into one of the command models
below; anything with an unrecognised tag becomes `UnknownCommand`.
"""

import json
from dataclasses import dataclass
from typing import ClassVar, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import ProtocolError
from messages import Message, now_ms
from users import User


# ================== INBOUND ==================
class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: ClassVar[str]


class JoinCommand(_Command):
    name: ClassVar[str] = "join"
    username: Optional[str] = None


class SendMessageCommand(_Command):
    name: ClassVar[str] = "send-message"
    content: Optional[str] = None


class LikeMessageCommand(_Command):
    name: ClassVar[str] = "like-message"
    message_id: Optional[str] = Field(default=None, alias="messageId")


class DislikeMessageCommand(_Command):
    name: ClassVar[str] = "dislike-message"
    message_id: Optional[str] = Field(default=None, alias="messageId")


class GetMessagesCommand(_Command):
    name: ClassVar[str] = "get-messages"
    since: Optional[int] = None


@dataclass(frozen=True)
class UnknownCommand:
    name: str


Command = Union[
    JoinCommand,
    SendMessageCommand,
    LikeMessageCommand,
    DislikeMessageCommand,
    GetMessagesCommand,
    UnknownCommand,
]

COMMANDS = {
    model.name: model
    for model in (
        JoinCommand,
        SendMessageCommand,
        LikeMessageCommand,
        DislikeMessageCommand,
        GetMessagesCommand,
    )
}


def decode_frame(raw: str) -> Command:
    try:
        frame = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError() from exc

    if not isinstance(frame, dict) or not isinstance(frame.get("command"), str):
        raise ProtocolError()

    model = COMMANDS.get(frame["command"])
    if model is None:
        return UnknownCommand(name=frame["command"])

    payload = frame.get("data")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError()

    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ProtocolError() from exc


# ================== OUTBOUND ==================
def encode(frame: dict) -> str:
    return json.dumps(frame, ensure_ascii=False)


def event(command: str, **data) -> dict:
    return {"command": command, "data": data}


def dump_messages(messages: Iterable[Message]) -> List[dict]:
    return [m.model_dump() for m in messages]


def connection_established(connection_id: str) -> dict:
    return event("connection-established", connectionId=connection_id)


def join_success(user: User, messages: Iterable[Message], online_users: List[str]) -> dict:
    return event(
        "join-success",
        user=user.model_dump(by_alias=True),
        messages=dump_messages(messages),
        onlineUsers=online_users,
    )


def user_joined(username: str, online_users: List[str]) -> dict:
    return event("user-joined", username=username, timestamp=now_ms(), onlineUsers=online_users)


def user_left(username: str, online_users: List[str]) -> dict:
    return event("user-left", username=username, timestamp=now_ms(), onlineUsers=online_users)


def new_message(message: Message) -> dict:
    return event("new-message", message=message.model_dump())


def message_updated(message: Message) -> dict:
    return event("message-updated", message=message.model_dump())


def messages_list(messages: Iterable[Message]) -> dict:
    return event("messages", messages=dump_messages(messages))


def error(message: str) -> dict:
    return event("error", message=message, timestamp=now_ms())
