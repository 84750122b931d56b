"""Client-side view of private conversations.

Mirrors what the server relays: every outbound private message walks
sending -> sent -> delivered -> read (or sending -> failed when the
server reports an error before confirming it), and every conversation
keeps an unread counter plus the status of the last message sent in it.
"""
import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..server.receipts import MessageStatus, advance


@dataclass
class OutboundMessage:
    local_id: int
    to: str
    content: str
    status: MessageStatus = MessageStatus.SENDING
    message_id: Optional[str] = None


@dataclass
class RecentChat:
    email: str
    username: str = ""
    last_message: str = ""
    timestamp: int = 0
    message_status: Optional[MessageStatus] = None
    unread_count: int = 0
    is_sent_by_me: bool = False


class ConversationState:
    """Tracks recent private chats and the status of messages we sent."""

    def __init__(self, my_email: str):
        self.my_email = my_email.lower()
        self.chats: Dict[str, RecentChat] = {}
        self.outbound: Dict[int, OutboundMessage] = {}
        self.current: Optional[str] = None
        self._ids = itertools.count(1)

    def _chat(self, email: str) -> RecentChat:
        email = email.lower()
        if email not in self.chats:
            self.chats[email] = RecentChat(email=email)
        return self.chats[email]

    def queue_outbound(self, to: str, content: str) -> OutboundMessage:
        msg = OutboundMessage(local_id=next(self._ids), to=to.lower(), content=content)
        self.outbound[msg.local_id] = msg
        chat = self._chat(to)
        chat.last_message, chat.is_sent_by_me = content, True
        chat.message_status = MessageStatus.SENDING
        return msg

    def pending(self, to: Optional[str] = None) -> List[OutboundMessage]:
        return [m for m in self.outbound.values()
                if m.status is MessageStatus.SENDING and (to is None or m.to == to.lower())]

    def mark_failed(self, to: Optional[str] = None) -> Optional[OutboundMessage]:
        """Fail the oldest message still waiting for confirmation."""
        waiting = self.pending(to)
        if not waiting:
            return None
        msg = waiting[0]
        msg.status = advance(msg.status, MessageStatus.FAILED)
        self._chat(msg.to).message_status = msg.status
        return msg

    def _advance_chat(self, email: str, status: MessageStatus):
        chat = self._chat(email)
        if chat.message_status is None:
            chat.message_status = status
        else:
            chat.message_status = advance(chat.message_status, status)

    def _advance_outbound(self, email: str, status: MessageStatus, message_id: Optional[str] = None):
        for msg in self.outbound.values():
            if msg.to != email.lower():
                continue
            if message_id and msg.message_id and msg.message_id != message_id:
                continue
            msg.status = advance(msg.status, status)

    def apply(self, event: str, data) -> Optional[dict]:
        """Fold one server event into the state.

        Returns:
            Optional[dict]: An envelope to send back (a read receipt), if any
        """
        data = data or {}
        if event == "private-message-sent":
            to = (data.get("to") or "").lower()
            status = MessageStatus(data.get("status") or MessageStatus.SENT)
            # a delivered receipt may already have moved it past `sending`
            unconfirmed = [m for m in self.outbound.values()
                           if m.to == to and m.message_id is None and m.status is not MessageStatus.FAILED]
            if unconfirmed:
                unconfirmed[0].message_id = data.get("id")
                unconfirmed[0].status = advance(unconfirmed[0].status, status)
            chat = self._chat(to)
            chat.last_message, chat.timestamp = data.get("message", ""), data.get("timestamp", 0)
            chat.is_sent_by_me = True
            self._advance_chat(to, status)
        elif event == "message-delivered-receipt":
            to = (data.get("to") or "").lower()
            self._advance_outbound(to, MessageStatus.DELIVERED, data.get("messageId"))
            self._advance_chat(to, MessageStatus.DELIVERED)
        elif event == "message-read-receipt":
            reader = (data.get("from") or "").lower()
            self._advance_outbound(reader, MessageStatus.READ)
            self._advance_chat(reader, MessageStatus.READ)
        elif event == "new-private-message":
            sender = (data.get("fromEmail") or "").lower()
            chat = self._chat(sender)
            chat.username = data.get("from", chat.username)
            chat.last_message, chat.timestamp = data.get("message", ""), data.get("timestamp", 0)
            chat.is_sent_by_me = False
            if self.current == sender:
                return self.read_receipt(sender)
            chat.unread_count += 1
        elif event == "error" and self.pending():
            self.mark_failed()
        return None

    def read_receipt(self, sender_email: str) -> dict:
        return {"event": "message-read", "data": {"from": sender_email.lower(), "to": self.my_email}}

    def activate(self, email: str) -> dict:
        """Open a conversation. A read receipt goes out on every activation."""
        email = email.lower()
        self.current = email
        self._chat(email).unread_count = 0
        return self.read_receipt(email)

    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.chats.values())
