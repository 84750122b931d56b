import uuid
from typing import List, Optional

from ..config import Config
from .errors import (AlreadyDeleted, Forbidden, NotFound, RecipientNotFound,
                     StorageUnavailable, ValidationFailure)
from .events import clean_content
from .hub import Hub
from .models import (MESSAGE_TYPES, TOMBSTONE, FileAttachment, GroupMessage, Message,
                     Reaction, User, file_wire_fields, now_ms)
from .network import NetworkGroups
from .receipts import MessageStatus, ReceiptRelay
from .repo import Store, tokenize
from .rooms import GENERAL_ROOM
from .sessions import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.pipeline')


def _limit(limit, default: int) -> int:
    try:
        limit = int(limit or default)
    except (TypeError, ValueError) as e:
        raise ValidationFailure("limit must be a number") from e
    if limit < 1:
        raise ValidationFailure("limit must be positive")
    return limit


def _page_args(page: int, limit: int):
    try:
        page = max(int(page or 1), 1)
    except (TypeError, ValueError) as e:
        raise ValidationFailure("page must be a number") from e
    return page, _limit(limit, Config.PAGE_SIZE)


def _page(items: list, page: int, limit: int) -> dict:
    """Shape a newest-first page for display.

    hasMore is true whenever a full page came back, which overreports on
    an exact multiple of the page size.
    """
    return {
        "messages": [m.to_client() for m in reversed(items)],
        "page": page,
        "hasMore": len(items) == limit,
    }


class MessagePipeline:
    """Validates, persists and fans out chat messages.

    Also applies edit, delete and reaction mutations to persisted messages
    and serves history and search reads.
    """

    def __init__(self, hub: Hub, registry: SessionRegistry, store: Store,
                 network: NetworkGroups, receipts: ReceiptRelay):
        self.hub = hub
        self.registry = registry
        self.store = store
        self.network = network
        self.receipts = receipts

    def _sender(self, conn_id: str):
        session = self.registry.get(conn_id)
        if not session:
            logger.warning(f"No session for connection {conn_id}")
        return session

    # real-time sends

    def send_general(self, conn_id: str, content: str, file: Optional[FileAttachment] = None) -> Optional[Message]:
        """Persist a general message and broadcast it to the general room, sender included."""
        session = self._sender(conn_id)
        if not session:
            return None
        content = clean_content(content, file)
        ts = now_ms()
        message = self.store.create_message(Message(
            id=uuid.uuid4().hex,
            sender_id=session.user_id,
            sender_username=session.username,
            sender_email=session.email,
            content=content,
            type="general",
            file=file,
            created_at=ts,
            updated_at=ts,
        ))
        data = {
            "id": message.id,
            "username": session.username,
            "email": session.email,
            "message": content,
            "timestamp": ts,
            "type": "general",
        }
        data.update(file_wire_fields(file))
        self.hub.broadcast_room(GENERAL_ROOM, "new-message", data)
        return message

    def send_private(self, conn_id: str, to: str, content: str,
                     file: Optional[FileAttachment] = None) -> Optional[Message]:
        """Persist a private message and deliver it if the recipient is online.

        Raises:
            RecipientNotFound: No user with that email
            ValidationFailure: Bad content

        Side Effects:
            - new-private-message to every live connection of the recipient
            - message-delivered-receipt to the sender when any was reached
            - private-message-sent to the sender, always
        """
        session = self._sender(conn_id)
        if not session:
            return None
        to = (to or "").strip().lower()
        recipient = self.store.find_user_by_email(to)
        if not recipient:
            raise RecipientNotFound(f"User {to} not found", email=to)
        content = clean_content(content, file)
        ts = now_ms()
        message = self.store.create_message(Message(
            id=uuid.uuid4().hex,
            sender_id=session.user_id,
            sender_username=session.username,
            sender_email=session.email,
            content=content,
            type="private",
            recipient_id=recipient.id,
            recipient_email=recipient.email,
            status=MessageStatus.SENT.value,
            file=file,
            created_at=ts,
            updated_at=ts,
        ))
        data = {
            "id": message.id,
            "from": session.username,
            "fromEmail": session.email,
            "to": recipient.email,
            "message": content,
            "timestamp": ts,
            "type": "private",
            "status": MessageStatus.SENT.value,
        }
        data.update(file_wire_fields(file))

        targets = self.registry.connections_for_email(recipient.email)
        if targets:
            self.hub.send_to_many(targets, "new-private-message", data)
            self.receipts.delivered(conn_id, recipient.email, message.id, ts)
            message.status = MessageStatus.DELIVERED.value
            data = dict(data, status=message.status)
            try:
                self.store.update_message(message)
            except StorageUnavailable as e:
                logger.error(f"Could not record delivery of {message.id}: {e}")
        self.hub.send_to_connection(conn_id, "private-message-sent", data)
        return message

    def send_file(self, conn_id: str, to: str, file: FileAttachment) -> Optional[Message]:
        return self.send_private(conn_id, to, file.name or "File", file)

    def send_group(self, conn_id: str, group_id: str, content: str,
                   file: Optional[FileAttachment] = None) -> Optional[GroupMessage]:
        """Persist a group message and broadcast it to the group room.

        Senders who are not members are ignored without any reply.
        """
        session = self._sender(conn_id)
        if not session:
            return None
        group = self.store.find_group_by_id(group_id)
        if not group or not group.is_member(session.email):
            logger.warning(f"Dropped group message from non-member {session.email} to {group_id}")
            return None
        content = clean_content(content, file)
        ts = now_ms()
        gm = self.store.create_group_message(GroupMessage(
            id=uuid.uuid4().hex,
            group_id=group.id,
            sender=session.email,
            sender_name=session.username,
            message=content,
            timestamp=ts,
            file=file,
        ))
        self.store.touch_group_activity(group.id, ts)
        data = gm.to_client()
        data["type"] = "group"
        self.hub.broadcast_room(group.room, "group-message", data)
        return gm

    def send_hotspot(self, conn_id: str, content: str, file: Optional[FileAttachment] = None) -> int:
        return self.network.broadcast(conn_id, content, file)

    def message_read(self, conn_id: str, sender_email: str, message_id: Optional[str] = None) -> int:
        """Recipient opened the conversation with `sender_email`.

        Relays a read receipt on every call and marks the conversation read.
        """
        session = self._sender(conn_id)
        if not session:
            return 0
        sent = self.receipts.read(session.email, sender_email, message_id)
        sender = self.store.find_user_by_email(sender_email)
        if sender:
            self.store.mark_conversation_read(sender.id, session.user_id)
        return sent

    # standalone records and mutations

    def create_message(self, user: User, fields: dict) -> Message:
        """Persist a message record outside the real-time path.

        Raises:
            ValidationFailure: Bad type, content or missing targeting fields
            RecipientNotFound: Private recipient does not exist
        """
        mtype = fields.get("type") or "general"
        if mtype not in MESSAGE_TYPES:
            raise ValidationFailure("Invalid message type")
        content = clean_content(fields.get("content"))
        ts = now_ms()
        message = Message(
            id=uuid.uuid4().hex,
            sender_id=user.id,
            sender_username=user.username,
            sender_email=user.email,
            content=content,
            type=mtype,
            created_at=ts,
            updated_at=ts,
        )
        if mtype == "private":
            email = (fields.get("recipientEmail") or "").strip().lower()
            if not email:
                raise ValidationFailure("recipientEmail is required for private messages")
            recipient = self.store.find_user_by_email(email)
            if not recipient:
                raise RecipientNotFound("Recipient not found", email=email)
            message.recipient_id = recipient.id
            message.recipient_email = recipient.email
        elif mtype == "group":
            message.group_id = fields.get("groupId")
            message.group_name = fields.get("groupName")
            if not message.group_id or not message.group_name:
                raise ValidationFailure("groupId and groupName are required for group messages")
        elif mtype == "hotspot":
            message.hotspot_color = fields.get("hotspotColor")
            message.network_id = fields.get("networkId")
            if not message.hotspot_color or not message.network_id:
                raise ValidationFailure("hotspotColor and networkId are required for hotspot messages")
        return self.store.create_message(message)

    def _get(self, message_id: str) -> Message:
        message = self.store.find_message(message_id)
        if not message:
            raise NotFound("Message not found")
        return message

    def edit(self, message_id: str, editor: User, content: str) -> Message:
        content = clean_content(content)
        message = self._get(message_id)
        if message.sender_id != editor.id:
            raise Forbidden("You can only edit your own messages")
        if message.is_deleted:
            raise AlreadyDeleted("Cannot edit deleted message")
        message.content = content
        message.is_edited = True
        message.edited_at = now_ms()
        self.store.update_message(message)
        logger.info(f"Message {message_id} edited by {editor.email}")
        return message

    def delete(self, message_id: str, editor: User) -> Message:
        """Soft delete: content becomes a tombstone, everything else stays."""
        message = self._get(message_id)
        if message.sender_id != editor.id:
            raise Forbidden("You can only delete your own messages")
        message.is_deleted = True
        message.deleted_at = now_ms()
        message.content = TOMBSTONE
        self.store.update_message(message)
        logger.info(f"Message {message_id} deleted by {editor.email}")
        return message

    def react(self, message_id: str, user: User, emoji: str) -> List[Reaction]:
        """Toggle a reaction: the same user and emoji again removes it."""
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationFailure("Emoji is required")
        message = self._get(message_id)
        if message.is_deleted:
            raise AlreadyDeleted("Cannot react to deleted message")
        existing = [r for r in message.reactions if r.user_id == user.id and r.emoji == emoji]
        if existing:
            message.reactions = [r for r in message.reactions
                                 if not (r.user_id == user.id and r.emoji == emoji)]
        else:
            message.reactions.append(Reaction(user_id=user.id, username=user.username,
                                              emoji=emoji, created_at=now_ms()))
        self.store.update_message(message)
        return message.reactions

    def unreact(self, message_id: str, user: User, emoji: str) -> List[Reaction]:
        message = self._get(message_id)
        message.reactions = [r for r in message.reactions
                             if not (r.user_id == user.id and r.emoji == emoji)]
        self.store.update_message(message)
        return message.reactions

    # reads

    def search(self, user: User, query: str, scope: Optional[str] = None,
               limit: int = None) -> List[Message]:
        """Word search over non-deleted messages.

        The private scope only searches conversations the user is part of.
        """
        query = (query or "").strip()
        if len(query) < 2:
            raise ValidationFailure("Search query must be at least 2 characters")
        if scope and scope not in MESSAGE_TYPES:
            raise ValidationFailure("Invalid message type")
        participant = user.id if scope == "private" else None
        return self.store.full_text_search_messages(
            tokenize(query), scope or None, participant, _limit(limit, Config.SEARCH_LIMIT))

    def general_history(self, page: int = 1, limit: int = None) -> dict:
        page, limit = _page_args(page, limit)
        items = self.store.find_messages_by_criteria(
            lambda m: m.type == "general", (page - 1) * limit, limit)
        return _page(items, page, limit)

    def private_history(self, user: User, other_email: str, page: int = 1, limit: int = None) -> dict:
        """A page of the conversation between `user` and `other_email`.

        Messages the other side sent to the user are marked read.
        """
        page, limit = _page_args(page, limit)
        other = self.store.find_user_by_email(other_email)
        if not other:
            raise RecipientNotFound("Recipient not found", email=other_email)
        pairs = {(user.id, other.id), (other.id, user.id)}
        items = self.store.find_messages_by_criteria(
            lambda m: m.type == "private" and (m.sender_id, m.recipient_id) in pairs,
            (page - 1) * limit, limit)
        self.store.mark_conversation_read(other.id, user.id)
        return _page(items, page, limit)

    def group_history(self, user: User, group_id: str, page: int = 1, limit: int = None) -> dict:
        page, limit = _page_args(page, limit)
        group = self.store.find_group_by_id(group_id)
        if not group:
            raise NotFound("Group not found")
        if not group.is_member(user.email):
            raise Forbidden("Not a member of this group")
        items = self.store.find_group_messages(group.id, (page - 1) * limit, limit)
        return _page(items, page, limit)

    def unread_count(self, user: User) -> int:
        return self.store.count_unread(user.id)
