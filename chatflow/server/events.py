"""Inbound stream events.

Each event name accepted on the chat stream maps to a frozen dataclass.
parse_event() validates the raw payload at the connection boundary, so
handlers only ever see well-formed events.
"""
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from ..config import Config
from .errors import ValidationFailure
from .models import FileAttachment


def _text(data: dict, *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value is not None:
            if not isinstance(value, str):
                raise ValidationFailure(f"'{key}' must be a string")
            return value
    return ""


def parse_file(raw) -> Optional[FileAttachment]:
    """Validate an inline file payload.

    Raises:
        ValidationFailure: Malformed or oversized payload
    """
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationFailure("File payload must be an object")
    data = raw.get("data")
    if not isinstance(data, str) or not data:
        raise ValidationFailure("File payload has no data")
    size = raw.get("size") or 0
    if not isinstance(size, (int, float)) or size < 0:
        raise ValidationFailure("File size must be a positive number")
    if size > Config.MAX_FILE_SIZE or len(data) > Config.MAX_FILE_SIZE * 4 // 3 + 64:
        raise ValidationFailure("File is too large", limit=Config.MAX_FILE_SIZE)
    return FileAttachment(
        data=data,
        type=str(raw.get("type") or ""),
        name=str(raw.get("name") or "file"),
        size=int(size),
    )


def _file(data: dict) -> Optional[FileAttachment]:
    return parse_file(data.get("file", data.get("fileData")))


@dataclass(frozen=True)
class Authenticate:
    token: str


@dataclass(frozen=True)
class JoinGeneralChat:
    pass


@dataclass(frozen=True)
class SendMessage:
    content: str
    file: Optional[FileAttachment] = None


@dataclass(frozen=True)
class DetectNetwork:
    network_id: str


@dataclass(frozen=True)
class JoinHotspotGroup:
    pass


@dataclass(frozen=True)
class SendHotspotMessage:
    content: str
    file: Optional[FileAttachment] = None


@dataclass(frozen=True)
class SendPrivateMessage:
    to: str
    content: str
    file: Optional[FileAttachment] = None


@dataclass(frozen=True)
class SendFileMessage:
    to: str
    file: FileAttachment


@dataclass(frozen=True)
class MessageRead:
    sender_email: str
    reader_email: str
    message_id: Optional[str] = None


@dataclass(frozen=True)
class CreateGroup:
    name: str
    members: Tuple[str, ...]
    created_by: str = ""


@dataclass(frozen=True)
class GetGroups:
    pass


@dataclass(frozen=True)
class JoinGroup:
    group_id: str


@dataclass(frozen=True)
class SendGroupMessage:
    group_id: str
    content: str
    file: Optional[FileAttachment] = None


@dataclass(frozen=True)
class GetGroupMessages:
    group_id: str


InboundEvent = Union[
    Authenticate, JoinGeneralChat, SendMessage, DetectNetwork, JoinHotspotGroup,
    SendHotspotMessage, SendPrivateMessage, SendFileMessage, MessageRead,
    CreateGroup, GetGroups, JoinGroup, SendGroupMessage, GetGroupMessages,
]


def _required(data: dict, *keys: str) -> str:
    value = _text(data, *keys).strip()
    if not value:
        raise ValidationFailure(f"'{keys[0]}' is required")
    return value


def _members(data: dict) -> Tuple[str, ...]:
    # group-creation-error is raised later for empty lists, here only the shape is checked
    raw = data.get("members")
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(m, str) for m in raw):
        raise ValidationFailure("'members' must be a list of emails")
    return tuple(m.strip().lower() for m in raw if m.strip())


_PARSERS = {
    "authenticate": lambda d: Authenticate(token=_text(d, "token")),
    "join-general-chat": lambda d: JoinGeneralChat(),
    "send-message": lambda d: SendMessage(content=_text(d, "content", "message"), file=_file(d)),
    "detect-network": lambda d: DetectNetwork(network_id=_text(d, "networkId").strip() or "unknown"),
    "join-hotspot-group": lambda d: JoinHotspotGroup(),
    "send-hotspot-message": lambda d: SendHotspotMessage(content=_text(d, "content", "message"), file=_file(d)),
    "send-private-message": lambda d: SendPrivateMessage(
        to=_required(d, "to").lower(), content=_text(d, "content", "message"), file=_file(d)),
    "send-file-message": lambda d: SendFileMessage(
        to=_required(d, "to").lower(), file=parse_file(d.get("fileData", d.get("file"))) or _no_file()),
    "message-read": lambda d: MessageRead(
        sender_email=_required(d, "from").lower(), reader_email=_text(d, "to").lower(),
        message_id=_text(d, "messageId") or None),
    "create-group": lambda d: CreateGroup(
        name=_text(d, "name").strip(), members=_members(d), created_by=_text(d, "createdBy")),
    "get-groups": lambda d: GetGroups(),
    "join-group": lambda d: JoinGroup(group_id=_required(d, "groupId")),
    "send-group-message": lambda d: SendGroupMessage(
        group_id=_required(d, "groupId"), content=_text(d, "content", "message"), file=_file(d)),
    "get-group-messages": lambda d: GetGroupMessages(group_id=_required(d, "groupId")),
}


def _no_file():
    raise ValidationFailure("'fileData' is required")


EVENT_NAMES = tuple(_PARSERS)


def parse_event(name: str, data) -> InboundEvent:
    """Turn a raw (name, payload) pair into a typed event.

    Raises:
        ValidationFailure: Unknown event name or malformed payload
    """
    parser = _PARSERS.get(name)
    if parser is None:
        raise ValidationFailure(f"Unknown event '{name}'")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationFailure(f"Payload of '{name}' must be an object")
    return parser(data)


def clean_content(content: Optional[str], file: Optional[FileAttachment] = None) -> str:
    """Trim and bound message text. A file-only message is named after the file.

    Raises:
        ValidationFailure: Empty or oversized content
    """
    content = (content or "").strip()
    if not content and file:
        content = file.name
    if not content:
        raise ValidationFailure("Message content is required")
    if len(content) > Config.MAX_MESSAGE_LENGTH:
        raise ValidationFailure(
            f"Message content must be between 1 and {Config.MAX_MESSAGE_LENGTH} characters")
    return content
