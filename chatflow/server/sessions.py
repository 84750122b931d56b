from typing import Callable, Dict, List, Optional

from .auth import TokenService
from .errors import ChatError, IdentityNotFound
from .hub import Connection, Hub
from .models import Session, User, now_ms
from .repo import Store
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.sessions')

DisconnectListener = Callable[[Session], None]


class SessionRegistry:
    """Source of truth for who is online.

    Maps live connection ids to the authenticated user behind them. One
    user may hold several connections at once (multi-device); the online
    list still reports that user once.
    """

    def __init__(self, hub: Hub, store: Store, tokens: TokenService):
        self.hub = hub
        self.store = store
        self.tokens = tokens
        self.sessions: Dict[str, Session] = {}
        self._listeners: List[DisconnectListener] = []

    def add_disconnect_listener(self, listener: DisconnectListener):
        self._listeners.append(listener)

    def authenticate(self, conn: Connection, credential: Optional[str]) -> Session:
        """Verify a bearer credential and register the connection.

        Args:
            conn (Connection): The new connection
            credential (Optional[str]): Bearer token presented by the client

        Returns:
            Session: The registered session

        Raises:
            Unauthenticated: Missing, invalid or expired credential
            IdentityNotFound: Token subject no longer exists
            StorageUnavailable: Store could not be read or updated
        """
        user_id = self.tokens.verify(credential)
        user = self.store.find_user_by_id(user_id)
        if not user:
            logger.warning(f"Token subject {user_id} not found")
            raise IdentityNotFound("Authentication error: Invalid token")
        self.store.update_user_online_status(user.id, True, now_ms())
        session = self.register(conn, user)
        logger.info(f"User connected: {user.username} ({user.email}) on {conn.id}")
        return session

    def register(self, conn: Connection, user: User) -> Session:
        session = Session(conn_id=conn.id, user_id=user.id, username=user.username, email=user.email)
        self.sessions[conn.id] = session
        self.hub.add(conn)
        self.broadcast_online()
        return session

    def unregister(self, conn_id: str) -> Optional[Session]:
        """Remove a connection and notify listeners.

        Disconnect listeners run before the connection leaves the hub so
        they can still address its rooms. The user is marked offline once
        its last connection is gone; a storage failure there is only logged.
        """
        session = self.sessions.pop(conn_id, None)
        if session is None:
            self.hub.remove(conn_id)
            return None
        for listener in self._listeners:
            try:
                listener(session)
            except Exception:
                logger.exception(f"Disconnect listener failed for {conn_id}")
        self.hub.remove(conn_id)
        if not self.connections_for_user(session.user_id):
            try:
                self.store.update_user_online_status(session.user_id, False, now_ms())
            except ChatError as e:
                logger.error(f"Could not mark {session.email} offline: {e.message}")
        logger.info(f"User disconnected: {session.username} ({conn_id})")
        self.broadcast_online()
        return session

    def get(self, conn_id: str) -> Optional[Session]:
        return self.sessions.get(conn_id)

    def connections_for_email(self, email: str) -> List[str]:
        email = (email or "").lower()
        return [cid for cid, s in self.sessions.items() if s.email.lower() == email]

    def connections_for_user(self, user_id: str) -> List[str]:
        return [cid for cid, s in self.sessions.items() if s.user_id == user_id]

    def list_online(self) -> List[dict]:
        """Distinct users with at least one registered connection."""
        seen = {}
        for s in self.sessions.values():
            if s.user_id not in seen:
                seen[s.user_id] = {"id": s.user_id, "username": s.username, "email": s.email}
        return list(seen.values())

    def broadcast_online(self):
        online = self.list_online()
        logger.debug(f"Broadcasting {len(online)} online users")
        self.hub.broadcast_all("online-users-updated", online)
