import uuid
from typing import Iterable, List, Optional

from ..config import Config
from .errors import InvalidGroupSpec, StorageUnavailable
from .hub import Hub
from .models import Group, GroupMessage, Session, now_ms
from .repo import Store
from .sessions import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.rooms')

GENERAL_ROOM = "general"


class RoomManager:
    """General room membership and durable named group lifecycle."""

    def __init__(self, hub: Hub, registry: SessionRegistry, store: Store):
        self.hub = hub
        self.registry = registry
        self.store = store
        registry.add_disconnect_listener(self.on_disconnect)

    def join_general(self, conn_id: str):
        """Add a connection to the global room and announce it to the others.

        The join notice is not persisted.
        """
        session = self.registry.get(conn_id)
        if not session:
            return
        self.hub.join(GENERAL_ROOM, conn_id)
        self.hub.send_to_connection(conn_id, "joined-general-chat")
        self.hub.broadcast_room(GENERAL_ROOM, "user-joined", {
            "username": session.username,
            "message": f"{session.username} joined the chat",
        }, exclude=conn_id)
        logger.info(f"User joining general chat: {session.username}")

    def on_disconnect(self, session: Session):
        self.hub.broadcast_room(GENERAL_ROOM, "user-left", {
            "username": session.username,
            "message": f"{session.username} left the chat",
        }, exclude=session.conn_id)

    def create_group(self, conn_id: str, name: str, members: Iterable[str]) -> Optional[Group]:
        """Create a durable group and pull its online members into the room.

        Args:
            conn_id (str): Connection of the creator
            name (str): Group name
            members (Iterable[str]): Member emails; the creator is added if missing

        Returns:
            Optional[Group]: The group, or None for an unknown connection

        Raises:
            InvalidGroupSpec: Missing name or members, or name too long

        Side Effects:
            - Persists the group and a system message announcing it
            - Joins every live connection of every member to the group room
            - Emits group-created to the requesting connection
        """
        session = self.registry.get(conn_id)
        if not session:
            return None
        name = (name or "").strip()
        members = [m.strip().lower() for m in (members or []) if m and m.strip()]
        if not name or not members:
            logger.error(f"Missing required fields: name={name!r}, members={members!r}")
            raise InvalidGroupSpec("Missing required fields")
        if len(name) > Config.MAX_GROUP_NAME_LENGTH:
            raise InvalidGroupSpec(f"Group name must be at most {Config.MAX_GROUP_NAME_LENGTH} characters")

        ordered = []
        for email in members + [session.email.lower()]:
            if email not in ordered:
                ordered.append(email)

        ts = now_ms()
        group = Group(
            id=uuid.uuid4().hex,
            name=name,
            members=ordered,
            created_by=session.email,
            created_at=ts,
            last_activity=ts,
        )
        try:
            self.store.create_group(group)
        except StorageUnavailable as e:
            raise InvalidGroupSpec("Failed to create group: storage unavailable") from e

        for email in ordered:
            for cid in self.registry.connections_for_email(email):
                self.hub.join(group.room, cid)

        self.hub.send_to_connection(conn_id, "group-created", {
            "id": group.id,
            "name": group.name,
            "members": list(group.members),
        })
        logger.info(f"Group '{group.name}' ({group.id}) created by {session.email}")

        self.store.create_group_message(GroupMessage(
            id=uuid.uuid4().hex,
            group_id=group.id,
            sender="system",
            sender_name="System",
            message=f'Group "{group.name}" created by {session.username}',
            timestamp=ts,
            type="system",
        ))
        return group

    def list_groups_for(self, email: str) -> List[Group]:
        """Groups the email belongs to, most recently active first."""
        return self.store.find_groups_by_member_email(email)

    def send_groups(self, conn_id: str):
        session = self.registry.get(conn_id)
        if not session:
            return
        groups = self.list_groups_for(session.email)
        self.hub.send_to_connection(conn_id, "groups-list", [g.to_client() for g in groups])

    def _member_group(self, conn_id: str, group_id: str) -> Optional[Group]:
        session = self.registry.get(conn_id)
        if not session:
            return None
        group = self.store.find_group_by_id(group_id)
        if not group or not group.is_member(session.email):
            # non-members get no answer at all
            logger.warning(f"{session.email} is not a member of group {group_id}")
            return None
        return group

    def recent_messages(self, group_id: str, limit: int = None) -> List[GroupMessage]:
        """Most recent group messages, oldest first."""
        latest = self.store.find_group_messages(group_id, 0, limit or Config.GROUP_REPLAY_LIMIT)
        return list(reversed(latest))

    def join_group(self, conn_id: str, group_id: str) -> bool:
        group = self._member_group(conn_id, group_id)
        if not group:
            return False
        self.hub.join(group.room, conn_id)
        self._replay(conn_id, group)
        return True

    def group_messages(self, conn_id: str, group_id: str) -> bool:
        group = self._member_group(conn_id, group_id)
        if not group:
            return False
        self._replay(conn_id, group)
        return True

    def _replay(self, conn_id: str, group: Group):
        messages = self.recent_messages(group.id)
        self.hub.send_to_connection(conn_id, "group-messages", [m.to_client() for m in messages])
