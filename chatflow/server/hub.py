import asyncio
import uuid
from typing import Dict, Iterable, List, Optional, Set
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.hub')


class Connection:
    """One live client stream.

    Outbound events are put on an unbounded asyncio Queue which the stream
    writer drains, so emitting never blocks the event loop.

    Attributes:
        id (str): Connection identifier
        peer (str): Transport peer string, e.g. 'ipv4:192.168.1.7:50312'
        forwarded_for (Optional[str]): x-forwarded-for header, if any
        queue (asyncio.Queue): Pending outbound envelopes
    """

    def __init__(self, peer: str = "", forwarded_for: Optional[str] = None, conn_id: Optional[str] = None):
        self.id = conn_id or uuid.uuid4().hex
        self.peer = peer
        self.forwarded_for = forwarded_for
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, event: str, data=None) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait({"event": event, "data": data if data is not None else {}})
        return True

    def drain(self) -> List[dict]:
        """Pop every queued envelope. Used by tests and shutdown."""
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out

    def __repr__(self):
        return f"Connection({self.id[:8]}, peer={self.peer!r})"


class Hub:
    """Message routing hub for real-time delivery.

    Tracks live connections and named broadcast rooms. All methods are
    plain functions called from handlers on the event loop, so room
    membership never changes underneath an emit.
    """

    def __init__(self):
        """Initialize message hub.

        Attributes:
            connections (Dict[str, Connection]): Live connections by id
            rooms (Dict[str, Set[str]]): Room name to member connection ids
        """
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[str]] = {}
        logger.info("Message Hub initialized")

    def add(self, conn: Connection):
        self.connections[conn.id] = conn
        logger.info(f"Registered connection {conn.id}")
        logger.debug(f"Active connections: {list(self.connections.keys())}")

    def remove(self, conn_id: str):
        """Remove a connection and drop it from every room it joined."""
        conn = self.connections.pop(conn_id, None)
        if conn:
            conn.closed = True
        for room in list(self.rooms):
            self.leave(room, conn_id)
        logger.info(f"Removed connection {conn_id}")
        logger.debug(f"Remaining connections: {list(self.connections.keys())}")

    def join(self, room: str, conn_id: str):
        if conn_id not in self.connections:
            logger.warning(f"Connection {conn_id} is gone, not joining {room}")
            return
        self.rooms.setdefault(room, set()).add(conn_id)
        logger.debug(f"Connection {conn_id} joined room {room}")

    def leave(self, room: str, conn_id: str):
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(conn_id)
        if not members:
            del self.rooms[room]

    def in_room(self, room: str, conn_id: str) -> bool:
        return conn_id in self.rooms.get(room, ())

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def send_to_connection(self, conn_id: str, event: str, data=None) -> bool:
        """Send an event to one connection if it is still open.

        Returns:
            bool: True if the event was queued, False if the connection is gone
        """
        conn = self.connections.get(conn_id)
        if conn and conn.send(event, data):
            logger.debug(f"Sent {event} to connection {conn_id}")
            return True
        logger.warning(f"Failed to send {event} to connection {conn_id} - not connected")
        return False

    def send_to_many(self, conn_ids: Iterable[str], event: str, data=None) -> int:
        return sum(1 for cid in conn_ids if self.send_to_connection(cid, event, data))

    def broadcast_room(self, room: str, event: str, data=None, exclude: Optional[str] = None) -> int:
        """Send an event to every connection in a room.

        Args:
            room (str): Room name
            event (str): Event name
            data: Event payload
            exclude (Optional[str]): Connection id to skip (usually the sender)

        Returns:
            int: Number of connections the event was queued for
        """
        targets = [cid for cid in self.members(room) if cid != exclude]
        sent = self.send_to_many(targets, event, data)
        logger.debug(f"Broadcast {event} to room {room}: {sent}/{len(targets)}")
        return sent

    def broadcast_all(self, event: str, data=None) -> int:
        return self.send_to_many(list(self.connections), event, data)
