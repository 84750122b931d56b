import asyncio, contextlib, functools
import grpc
from grpc import aio
from typing import AsyncIterable, Optional

from ..config import Config
from . import codec, events
from .accounts import AccountService
from .auth import TokenService, bearer_token
from .errors import ChatError, Forbidden, StorageUnavailable
from .hub import Connection, Hub
from .models import Session, User
from .network import NetworkGroups
from .pipeline import MessagePipeline
from .receipts import ReceiptRelay
from .repo import Store
from .rooms import RoomManager
from .sessions import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.server')

UNARY_METHODS = (
    "Health", "RegisterUser", "LoginUser", "ExternalLogin", "Logout", "GetProfile",
    "ListUsers", "SearchUsers", "UpdateUsername", "UpdateEmail", "ChangePassword",
    "DeleteAccount", "GetGeneralMessages", "GetPrivateMessages", "GetGroupMessages",
    "CreateMessage", "EditMessage", "DeleteMessage", "ReactMessage", "UnreactMessage",
    "SearchMessages", "UnreadCount", "ListUserGroups",
)


def _rpc(method):
    """Turn ChatErrors raised by a unary handler into gRPC aborts."""
    @functools.wraps(method)
    async def wrapper(self, request, context):
        try:
            return await method(self, request or {}, context)
        except ChatError as e:
            logger.warning(f"{method.__name__}: {e.code}: {e.message}")
            await context.abort(e.grpc_status, e.to_payload().get("message", e.message))
    return wrapper


def _metadata(context) -> dict:
    if context is None:
        return {}
    return {k.lower(): v for k, v in (context.invocation_metadata() or ())}


class ChatService:
    """gRPC chat service.

    Owns every piece of live state (hub, session registry, hotspot groups)
    and wires the components together, so independent instances can run
    side by side.

    The OpenStream RPC carries named events in both directions; the other
    RPCs are plain request/response calls authenticated with a bearer
    token in the 'authorization' metadata.
    """

    def __init__(self, store: Store, tokens: Optional[TokenService] = None):
        """Initialize chat service.

        Args:
            store (Store): Persistent store
            tokens (Optional[TokenService]): Token issuer/verifier, defaults to Config secrets
        """
        self.store = store
        self.tokens = tokens or TokenService()
        self.hub = Hub()
        self.registry = SessionRegistry(self.hub, store, self.tokens)
        self.network = NetworkGroups(self.hub, self.registry)
        self.rooms = RoomManager(self.hub, self.registry, store)
        self.receipts = ReceiptRelay(self.hub, self.registry)
        self.pipeline = MessagePipeline(self.hub, self.registry, store, self.network, self.receipts)
        self.accounts = AccountService(store, self.tokens)
        self._handlers = {
            events.JoinGeneralChat: lambda cid, e: self.rooms.join_general(cid),
            events.SendMessage: lambda cid, e: self.pipeline.send_general(cid, e.content, e.file),
            events.DetectNetwork: lambda cid, e: self.network.assign(cid, e.network_id),
            events.JoinHotspotGroup: lambda cid, e: self.network.join(cid),
            events.SendHotspotMessage: lambda cid, e: self.pipeline.send_hotspot(cid, e.content, e.file),
            events.SendPrivateMessage: lambda cid, e: self.pipeline.send_private(cid, e.to, e.content, e.file),
            events.SendFileMessage: lambda cid, e: self.pipeline.send_file(cid, e.to, e.file),
            events.MessageRead: lambda cid, e: self.pipeline.message_read(cid, e.sender_email, e.message_id),
            events.CreateGroup: lambda cid, e: self.rooms.create_group(cid, e.name, e.members),
            events.GetGroups: lambda cid, e: self.rooms.send_groups(cid),
            events.JoinGroup: lambda cid, e: self.rooms.join_group(cid, e.group_id),
            events.SendGroupMessage: lambda cid, e: self.pipeline.send_group(cid, e.group_id, e.content, e.file),
            events.GetGroupMessages: lambda cid, e: self.rooms.group_messages(cid, e.group_id),
        }

    # stream lifecycle

    def connect(self, conn: Connection, credential: Optional[str]) -> Session:
        """Authenticate a new connection and offer it a hotspot group.

        Raises:
            Unauthenticated: Bad credential (the stream must be closed)
            StorageUnavailable: Store failed during authentication
        """
        session = self.registry.authenticate(conn, credential)
        conn.send("authenticated", {"id": session.user_id, "username": session.username,
                                    "email": session.email, "connectionId": conn.id})
        try:
            self.network.detect(conn.id, conn.peer, conn.forwarded_for)
        except Exception:
            logger.exception(f"Hotspot detection failed for {conn.id}")
        return session

    def dispatch(self, conn_id: str, name: str, data=None):
        """Handle one inbound event from an authenticated connection.

        Failures are reported to the invoking connection only; nothing
        raised here ever ends the stream.
        """
        try:
            event = events.parse_event(name, data)
            handler = self._handlers.get(type(event))
            if handler is None:
                logger.debug(f"Ignoring {name} from {conn_id}")
                return
            logger.debug(f"Dispatching {name} from {conn_id}")
            handler(conn_id, event)
        except StorageUnavailable as e:
            logger.error(f"Storage unavailable while handling {name} from {conn_id}: {e}")
            self.hub.send_to_connection(conn_id, e.event, e.to_payload())
        except ChatError as e:
            logger.warning(f"{name} from {conn_id} failed: {e.code}: {e.message}")
            self.hub.send_to_connection(conn_id, e.event, e.to_payload())
        except Exception:
            logger.exception(f"Unexpected error handling {name} from {conn_id}")
            self.hub.send_to_connection(conn_id, "error", {"code": "Internal", "message": "Failed to process request"})

    def disconnect(self, conn_id: str):
        try:
            self.registry.unregister(conn_id)
        except Exception:
            logger.exception(f"Cleanup failed for connection {conn_id}")

    async def OpenStream(self, request_iterator: AsyncIterable[dict], context: aio.ServicerContext):
        """Open a bidirectional event stream with a client.

        Protocol Flow:
        1. Client presents a bearer token, either in 'authorization'
           metadata or as a first 'authenticate' event, within AUTH_TIMEOUT
        2. Server registers the connection and replies 'authenticated'
        3. Events flow both ways until either side closes

        Yields:
            dict: Outbound envelopes {'event': ..., 'data': ...}
        """
        metadata = _metadata(context)
        conn = Connection(peer=context.peer(), forwarded_for=metadata.get("x-forwarded-for"))
        token = bearer_token(metadata.get("authorization"))
        if not token:
            try:
                first = await asyncio.wait_for(anext(request_iterator), Config.AUTH_TIMEOUT)
            except (asyncio.TimeoutError, StopAsyncIteration):
                first = None
            if not first or first.get("event") != "authenticate":
                logger.error(f"ChatStream: no credential from {conn.peer}")
                await context.abort(grpc.StatusCode.UNAUTHENTICATED, "Authentication error: No token provided")
            try:
                token = events.parse_event("authenticate", first.get("data")).token
            except ChatError as e:
                logger.error(f"ChatStream: malformed authenticate from {conn.peer}: {e.message}")
                await context.abort(grpc.StatusCode.UNAUTHENTICATED, f"Authentication error: {e.message}")

        try:
            self.connect(conn, token)
        except ChatError as e:
            logger.error(f"ChatStream: authentication failed for {conn.peer}: {e.message}")
            await context.abort(e.grpc_status, e.to_payload().get("message", e.message))

        async def reader():
            """Handle inbound events in arrival order."""
            try:
                async for incoming in request_iterator:
                    self.dispatch(conn.id, incoming.get("event"), incoming.get("data"))
            except Exception:
                logger.exception(f"ChatStream: inbound stream from {conn.peer} failed")
            finally:
                conn.queue.put_nowait(None)

        reader_task = asyncio.create_task(reader())
        try:
            while True:
                out = await conn.queue.get()
                if out is None:
                    break
                yield out
        finally:
            reader_task.cancel()
            try:
                with contextlib.suppress(asyncio.CancelledError):
                    await reader_task
            finally:
                self.disconnect(conn.id)

    # unary helpers

    def _caller(self, request: dict, context) -> User:
        token = bearer_token(_metadata(context).get("authorization")) or request.get("token")
        return self.accounts.authenticate(token)

    @staticmethod
    def _auth_reply(token: str, user: User) -> dict:
        return {"token": token, "user": {"id": user.id, "username": user.username, "email": user.email}}

    # accounts

    @_rpc
    async def Health(self, request, context):
        return {"status": "ok", "online": len(self.registry.list_online()),
                "hotspots": len(self.network.groups)}

    @_rpc
    async def RegisterUser(self, request, context):
        token, user = await self.accounts.register(request.get("username"), request.get("email"),
                                                   request.get("password"))
        logger.info(f"RegisterUser: '{user.username}' registered with ID '{user.id}'")
        return self._auth_reply(token, user)

    @_rpc
    async def LoginUser(self, request, context):
        token, user = await self.accounts.login(request.get("email"), request.get("password"))
        return self._auth_reply(token, user)

    @_rpc
    async def ExternalLogin(self, request, context):
        if not Config.EXTERNAL_AUTH_SECRET or request.get("bridgeSecret") != Config.EXTERNAL_AUTH_SECRET:
            raise Forbidden("External login is not enabled")
        token, user = self.accounts.login_external(request.get("providerId"), request.get("email"),
                                                   request.get("displayName"), request.get("avatar"))
        return self._auth_reply(token, user)

    @_rpc
    async def Logout(self, request, context):
        self.accounts.logout(self._caller(request, context))
        return {"message": "Logout successful"}

    @_rpc
    async def GetProfile(self, request, context):
        return {"user": self._caller(request, context).public()}

    @_rpc
    async def ListUsers(self, request, context):
        user = self._caller(request, context)
        return {"users": [u.public() for u in self.accounts.list_users(user)]}

    @_rpc
    async def SearchUsers(self, request, context):
        user = self._caller(request, context)
        return {"users": [u.public() for u in self.accounts.search_users(user, request.get("q"))]}

    @_rpc
    async def UpdateUsername(self, request, context):
        user = self.accounts.update_username(self._caller(request, context), request.get("username"))
        return {"user": user.public()}

    @_rpc
    async def UpdateEmail(self, request, context):
        user = self.accounts.update_email(self._caller(request, context), request.get("email"))
        return {"user": user.public()}

    @_rpc
    async def ChangePassword(self, request, context):
        await self.accounts.change_password(self._caller(request, context), request.get("oldPassword"),
                                            request.get("newPassword"))
        return {"message": "Password changed successfully"}

    @_rpc
    async def DeleteAccount(self, request, context):
        await self.accounts.delete_account(self._caller(request, context), request.get("password"))
        return {"message": "Account deleted successfully"}

    # history and mutations

    @_rpc
    async def GetGeneralMessages(self, request, context):
        self._caller(request, context)
        return self.pipeline.general_history(request.get("page", 1), request.get("limit"))

    @_rpc
    async def GetPrivateMessages(self, request, context):
        user = self._caller(request, context)
        return self.pipeline.private_history(user, request.get("recipientEmail", ""),
                                             request.get("page", 1), request.get("limit"))

    @_rpc
    async def GetGroupMessages(self, request, context):
        user = self._caller(request, context)
        return self.pipeline.group_history(user, request.get("groupId", ""),
                                           request.get("page", 1), request.get("limit"))

    @_rpc
    async def CreateMessage(self, request, context):
        message = self.pipeline.create_message(self._caller(request, context), request)
        return {"message": "Message saved successfully", "messageId": message.id}

    @_rpc
    async def EditMessage(self, request, context):
        message = self.pipeline.edit(request.get("messageId", ""), self._caller(request, context),
                                     request.get("content"))
        return {"message": "Message updated successfully", "updatedMessage": message.to_client()}

    @_rpc
    async def DeleteMessage(self, request, context):
        self.pipeline.delete(request.get("messageId", ""), self._caller(request, context))
        return {"message": "Message deleted successfully"}

    @_rpc
    async def ReactMessage(self, request, context):
        reactions = self.pipeline.react(request.get("messageId", ""), self._caller(request, context),
                                        request.get("emoji"))
        return {"message": "Reaction updated successfully", "reactions": [r.to_client() for r in reactions]}

    @_rpc
    async def UnreactMessage(self, request, context):
        reactions = self.pipeline.unreact(request.get("messageId", ""), self._caller(request, context),
                                          request.get("emoji"))
        return {"message": "Reaction removed successfully", "reactions": [r.to_client() for r in reactions]}

    @_rpc
    async def SearchMessages(self, request, context):
        messages = self.pipeline.search(self._caller(request, context), request.get("query"),
                                        request.get("type"), request.get("limit"))
        return {"messages": [m.to_client() for m in messages], "count": len(messages)}

    @_rpc
    async def UnreadCount(self, request, context):
        return {"unreadCount": self.pipeline.unread_count(self._caller(request, context))}

    @_rpc
    async def ListUserGroups(self, request, context):
        user = self._caller(request, context)
        return {"groups": [g.to_client() for g in self.rooms.list_groups_for(user.email)]}


def build_handler(service: ChatService) -> grpc.GenericRpcHandler:
    """Register every service method under chatflow.ChatService with the Struct codec."""
    handlers = {
        "OpenStream": grpc.stream_stream_rpc_method_handler(
            service.OpenStream, request_deserializer=codec.decode, response_serializer=codec.encode),
    }
    for name in UNARY_METHODS:
        handlers[name] = grpc.unary_unary_rpc_method_handler(
            getattr(service, name), request_deserializer=codec.decode, response_serializer=codec.encode)
    return grpc.method_handlers_generic_handler(codec.SERVICE_NAME, handlers)
