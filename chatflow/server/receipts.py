"""Delivery and read receipts.

Status of a private message, as seen by its sender:

    sending -> sent -> delivered -> read
       \\-> failed

`sending` and `failed` only exist on the client. The server sets `sent`
when the message is persisted, relays `delivered` when the recipient had a
live connection at send time, and relays `read` every time the recipient
opens the conversation. Receipts are fire-and-forget.
"""
from enum import Enum
from typing import Optional

from .hub import Hub
from .sessions import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.receipts')


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_ORDER = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """Only forward moves are allowed; `failed` is reachable from `sending` only."""
    current, new = MessageStatus(current), MessageStatus(new)
    if new is MessageStatus.FAILED:
        return current is MessageStatus.SENDING
    if current is MessageStatus.FAILED:
        return False
    return _ORDER[new] > _ORDER[current]


def advance(current: MessageStatus, new: MessageStatus) -> MessageStatus:
    """Apply a transition if legal, otherwise keep the current status."""
    return MessageStatus(new) if can_transition(current, new) else MessageStatus(current)


class ReceiptRelay:
    """Relays receipts from the recipient side back to the original sender."""

    def __init__(self, hub: Hub, registry: SessionRegistry):
        self.hub = hub
        self.registry = registry

    def delivered(self, sender_conn_id: str, recipient_email: str, message_id: str, timestamp: int) -> bool:
        sent = self.hub.send_to_connection(sender_conn_id, "message-delivered-receipt", {
            "to": recipient_email,
            "messageId": message_id,
            "timestamp": timestamp,
        })
        if sent:
            logger.info(f"Delivered receipt sent to {sender_conn_id} for message to {recipient_email}")
        return sent

    def read(self, reader_email: str, sender_email: str, message_id: Optional[str] = None) -> int:
        """Tell every connection of the original sender that the reader opened the chat.

        Returns:
            int: Number of sender connections notified (0 if sender offline)
        """
        targets = self.registry.connections_for_email(sender_email)
        payload = {"from": reader_email}
        if message_id:
            payload["messageId"] = message_id
        sent = self.hub.send_to_many(targets, "message-read-receipt", payload)
        logger.info(f"Read receipt from {reader_email} sent to {sender_email} ({sent} connections)")
        return sent
