"""Hotspot grouping: anonymous rooms for clients that share a local network.

A connection's network identity is the first three octets of its private
IPv4 address (a /24 approximation). Connections with the same identity
are offered a shared room in which they appear only as a color.
"""
import ipaddress
import random
import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from .events import clean_content
from .hub import Hub
from .models import FileAttachment, Session, file_wire_fields, now_ms
from .sessions import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.network')

PALETTE = ('Red', 'Blue', 'Green', 'Purple', 'Orange', 'Pink', 'Cyan', 'Yellow', 'Lime', 'Indigo')

_PRIVATE_NETS = (
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
)
_IPV4 = re.compile(r'(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})')


def _parse_ipv4(ip: Optional[str]) -> Optional[ipaddress.IPv4Address]:
    if not ip:
        return None
    try:
        return ipaddress.IPv4Address(ip.strip())
    except ValueError:
        return None


def is_private_ipv4(ip: Optional[str]) -> bool:
    addr = _parse_ipv4(ip)
    return addr is not None and any(addr in net for net in _PRIVATE_NETS)


def network_id_from_ip(ip: Optional[str]) -> Optional[str]:
    """Derive a network id from an IPv4 address.

    Returns:
        Optional[str]: First three octets for private addresses, None for
        public or invalid ones
    """
    if not is_private_ipv4(ip):
        return None
    return '.'.join(str(_parse_ipv4(ip)).split('.')[:3])


def client_ipv4(peer: Optional[str], forwarded_for: Optional[str] = None) -> Optional[str]:
    """Best-effort IPv4 address of a client.

    Prefers the first x-forwarded-for entry, then the transport peer
    ('ipv4:10.0.0.5:4242', 'ipv6:[::ffff:10.0.0.5]:4242'). IPv6-mapped
    IPv4 addresses are unwrapped.
    """
    for candidate in ((forwarded_for or '').split(',')[0].strip(), peer or ''):
        match = _IPV4.search(candidate)
        if match and _parse_ipv4(match.group(1)):
            return match.group(1)
    return None


def allocate_color(used: Set[str], rng: random.Random = None) -> Tuple[str, bool]:
    """Pick a display color not in `used`.

    Returns:
        Tuple[str, bool]: The color, and whether it is guaranteed unique.
        Once the palette is exhausted a random palette color with a random
        number below 100 appended is returned with False.
    """
    rng = rng or random
    available = [c for c in PALETTE if c not in used]
    if available:
        return rng.choice(available), True
    return f"{rng.choice(PALETTE)}{rng.randrange(100)}", False


@dataclass
class NetworkGroup:
    """Ephemeral hotspot group.

    Attributes:
        network_id (str): Derived network identity
        members (Set[str]): Connection ids holding a color in this group
        joined (Set[str]): Connection ids currently in the broadcast room
        used_colors (Set[str]): Colors held by members
    """
    network_id: str
    members: Set[str] = field(default_factory=set)
    joined: Set[str] = field(default_factory=set)
    used_colors: Set[str] = field(default_factory=set)

    @property
    def room(self) -> str:
        return f"hotspot-{self.network_id}"


class NetworkGroups:
    """Clusters connections into hotspot groups by network identity."""

    def __init__(self, hub: Hub, registry: SessionRegistry, rng: random.Random = None):
        self.hub = hub
        self.registry = registry
        self.rng = rng or random.Random()
        self.groups: Dict[str, NetworkGroup] = {}
        registry.add_disconnect_listener(self.leave)

    def detect(self, conn_id: str, peer: str, forwarded_for: Optional[str] = None) -> Optional[str]:
        """Assign a group from the connection's address if it is private."""
        ip = client_ipv4(peer, forwarded_for)
        network_id = network_id_from_ip(ip)
        if not network_id:
            logger.debug(f"No hotspot network for {conn_id} (ip={ip})")
            return None
        self.assign(conn_id, network_id)
        return network_id

    def assign(self, conn_id: str, network_id: str) -> Optional[NetworkGroup]:
        """Put a connection in the group for `network_id` and give it a color.

        Lazily creates the group. A connection that was assigned to another
        network first leaves that one. Emits hotspot-group-available.
        """
        session = self.registry.get(conn_id)
        if not session:
            return None
        if session.network_id and session.network_id != network_id:
            self._release(session)
        group = self.groups.get(network_id)
        if group is None:
            group = self.groups[network_id] = NetworkGroup(network_id)
            logger.info(f"Hotspot group {network_id} created")
        session.network_id = network_id
        group.members.add(conn_id)

        if not session.assigned_color:
            color, guaranteed = allocate_color(group.used_colors, self.rng)
            if not guaranteed:
                logger.warning(f"Palette exhausted in {network_id}, using {color}")
            session.assigned_color = color
            group.used_colors.add(color)

        self.hub.send_to_connection(conn_id, "hotspot-group-available", {
            "networkId": network_id,
            "assignedColor": session.assigned_color,
            "userCount": len(group.joined),
        })
        logger.info(f"User {session.username} assigned to network {network_id} as {session.assigned_color} User")
        return group

    def join(self, conn_id: str) -> bool:
        session = self.registry.get(conn_id)
        group = self.groups.get(session.network_id) if session and session.network_id else None
        if not group:
            logger.debug(f"join-hotspot-group from {conn_id} without a network")
            return False
        self.hub.join(group.room, conn_id)
        group.joined.add(conn_id)
        self.hub.send_to_connection(conn_id, "joined-hotspot-group", {
            "networkId": group.network_id,
            "assignedColor": session.assigned_color,
            "userCount": len(group.joined),
        })
        self.hub.broadcast_room(group.room, "user-joined-hotspot", {
            "color": session.assigned_color,
            "message": f"{session.assigned_color} User joined the hotspot group",
        }, exclude=conn_id)
        logger.info(f"{session.username} ({session.assigned_color} User) joined hotspot group "
                    f"{group.network_id}. Total users: {len(group.joined)}")
        return True

    def leave(self, session: Session):
        """Disconnect listener: release the color and drop empty groups."""
        if session.network_id:
            self._release(session)

    def _release(self, session: Session):
        group = self.groups.get(session.network_id)
        conn_id = session.conn_id
        if group:
            was_joined = conn_id in group.joined
            group.members.discard(conn_id)
            group.joined.discard(conn_id)
            if session.assigned_color:
                group.used_colors.discard(session.assigned_color)
            self.hub.leave(group.room, conn_id)
            if not group.members:
                del self.groups[group.network_id]
                logger.info(f"Hotspot group {group.network_id} removed")
            elif was_joined:
                self.hub.broadcast_room(group.room, "user-left-hotspot", {
                    "color": session.assigned_color,
                    "message": f"{session.assigned_color} User left the hotspot group",
                }, exclude=conn_id)
        session.network_id = None
        session.assigned_color = None

    def broadcast(self, conn_id: str, content: str, file: Optional[FileAttachment] = None) -> int:
        """Fan a hotspot message out to the group room, sender included.

        Nothing is persisted.
        """
        session = self.registry.get(conn_id)
        group = self.groups.get(session.network_id) if session and session.network_id else None
        if not group:
            return 0
        content = clean_content(content, file)
        payload = {
            "id": uuid.uuid4().hex,
            "color": session.assigned_color,
            "message": content,
            "timestamp": now_ms(),
            "type": "hotspot",
            "networkId": group.network_id,
        }
        payload.update(file_wire_fields(file))
        return self.hub.broadcast_room(group.room, "new-hotspot-message", payload)

    def snapshot(self) -> Dict[str, dict]:
        return {
            nid: {"members": len(g.members), "joined": len(g.joined), "colors": sorted(g.used_colors)}
            for nid, g in self.groups.items()
        }
