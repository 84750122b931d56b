import time
from dataclasses import dataclass, field, asdict, fields
from typing import List, Optional

MESSAGE_TYPES = ("general", "private", "group", "hotspot")
TOMBSTONE = "This message was deleted"


def now_ms() -> int:
    return int(time.time() * 1000)


def _known(cls, rec: dict) -> dict:
    """Drop keys a dataclass does not declare (records written by newer code)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in rec.items() if k in names}


@dataclass
class FileAttachment:
    """Inline file carried by a message.

    Attributes:
        data (str): Base64 (or data URL) encoded bytes
        type (str): Declared category or mime type ('image', 'application/pdf', ...)
        name (str): Original file name
        size (int): Declared size in bytes
    """
    data: str
    type: str = ""
    name: str = ""
    size: int = 0

    @classmethod
    def from_dict(cls, rec: Optional[dict]) -> Optional["FileAttachment"]:
        if not rec:
            return None
        return cls(**_known(cls, rec))

    def wire_fields(self) -> dict:
        return {
            "fileData": {"data": self.data, "type": self.type, "name": self.name, "size": self.size},
            "fileType": self.type,
            "fileName": self.name,
            "fileSize": self.size,
        }


def file_wire_fields(file: Optional[FileAttachment]) -> dict:
    return file.wire_fields() if file else {}


@dataclass
class User:
    """Represents a user account.

    Attributes:
        id (str): Unique identifier for the user
        username (str): Display name
        email (str): Unique, lowercased email address
        password_hash (Optional[str]): bcrypt hash, absent for external-auth users
        google_id (Optional[str]): External identity provider subject
        avatar (Optional[str]): Avatar URL
        is_google_auth (bool): Account was created through external auth
        is_online (bool): Online flag
        last_seen (int): Unix timestamp in milliseconds
        created_at (int): Unix timestamp in milliseconds
    """
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    is_google_auth: bool = False
    is_online: bool = False
    last_seen: int = 0
    created_at: int = 0

    @classmethod
    def from_dict(cls, rec: dict) -> "User":
        return cls(**_known(cls, rec))

    def to_dict(self) -> dict:
        return asdict(self)

    def public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "isOnline": self.is_online,
            "lastSeen": self.last_seen,
        }


@dataclass
class Session:
    """Binds one live connection to one user. Never persisted."""
    conn_id: str
    user_id: str
    username: str
    email: str
    network_id: Optional[str] = None
    assigned_color: Optional[str] = None


@dataclass
class Group:
    """Durable named chat group.

    Membership is a list of emails so that people who have not registered
    yet can still be invited.
    """
    id: str
    name: str
    members: List[str]
    created_by: str
    created_at: int
    last_activity: int

    @classmethod
    def from_dict(cls, rec: dict) -> "Group":
        return cls(**_known(cls, rec))

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def room(self) -> str:
        return f"group-{self.id}"

    def is_member(self, email: str) -> bool:
        return email.lower() in (m.lower() for m in self.members)

    def to_client(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "members": list(self.members),
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }


@dataclass
class Reaction:
    user_id: str
    username: str
    emoji: str
    created_at: int

    def to_client(self) -> dict:
        return {"userId": self.user_id, "username": self.username,
                "emoji": self.emoji, "createdAt": self.created_at}


@dataclass
class Message:
    """Persisted chat message (general, private, group or hotspot record).

    Attributes:
        id (str): Unique identifier for the message
        sender_id (str): ID of the sending user
        sender_username (str): Snapshot of the sender's name at send time
        sender_email (str): Snapshot of the sender's email at send time
        content (str): Text content, tombstone text once deleted
        type (str): One of MESSAGE_TYPES
        recipient_id / recipient_email: Private messages only
        group_id / group_name: Group records only
        hotspot_color / network_id: Hotspot records only
        status (str): sent, delivered or read
        reactions (List[Reaction]): In insertion order
        file (Optional[FileAttachment]): Inline file payload
    """
    id: str
    sender_id: str
    sender_username: str
    sender_email: str
    content: str
    type: str = "general"
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    hotspot_color: Optional[str] = None
    network_id: Optional[str] = None
    status: str = "sent"
    is_read: bool = False
    is_edited: bool = False
    edited_at: Optional[int] = None
    is_deleted: bool = False
    deleted_at: Optional[int] = None
    reactions: List[Reaction] = field(default_factory=list)
    file: Optional[FileAttachment] = None
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_dict(cls, rec: dict) -> "Message":
        rec = _known(cls, rec)
        rec["reactions"] = [Reaction(**r) for r in rec.get("reactions") or []]
        rec["file"] = FileAttachment.from_dict(rec.get("file"))
        return cls(**rec)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_client(self) -> dict:
        data = {
            "id": self.id,
            "sender": {"id": self.sender_id, "username": self.sender_username, "email": self.sender_email},
            "username": self.sender_username,
            "email": self.sender_email,
            "message": self.content,
            "content": self.content,
            "type": self.type,
            "timestamp": self.created_at,
            "status": self.status,
            "isRead": self.is_read,
            "isEdited": self.is_edited,
            "editedAt": self.edited_at,
            "isDeleted": self.is_deleted,
            "deletedAt": self.deleted_at,
            "reactions": [r.to_client() for r in self.reactions],
        }
        if self.type == "private":
            data["recipientEmail"] = self.recipient_email
        elif self.type == "group":
            data["groupId"] = self.group_id
            data["groupName"] = self.group_name
        elif self.type == "hotspot":
            data["hotspotColor"] = self.hotspot_color
            data["networkId"] = self.network_id
        data.update(file_wire_fields(self.file))
        return data


@dataclass
class GroupMessage:
    """Append-only message in a named group's stream."""
    id: str
    group_id: str
    sender: str
    sender_name: str
    message: str
    timestamp: int
    type: str = "text"
    file: Optional[FileAttachment] = None

    @classmethod
    def from_dict(cls, rec: dict) -> "GroupMessage":
        rec = _known(cls, rec)
        rec["file"] = FileAttachment.from_dict(rec.get("file"))
        return cls(**rec)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_client(self) -> dict:
        data = {
            "id": self.id,
            "groupId": self.group_id,
            "sender": self.sender,
            "senderName": self.sender_name,
            "message": self.message,
            "timestamp": self.timestamp,
            "type": self.type,
        }
        data.update(file_wire_fields(self.file))
        return data
