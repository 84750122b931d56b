import asyncio, re, typer
import grpc
from grpc import aio
from typing import Optional

from ..config import Config
from ..server import codec
from .state import ConversationState

app = typer.Typer(help="ChatFlow command line client")


class ChatClient:
    """Thin wrapper over the generic chatflow.ChatService methods."""

    def __init__(self, channel: aio.Channel):
        self.channel = channel
        self.token: Optional[str] = None
        self.user: dict = {}
        self._open_stream = channel.stream_stream(
            codec.method_path("OpenStream"),
            request_serializer=codec.encode,
            response_deserializer=codec.decode,
        )

    def _metadata(self):
        return (("authorization", f"Bearer {self.token}"),) if self.token else None

    async def call(self, method: str, request: Optional[dict] = None) -> dict:
        rpc = self.channel.unary_unary(
            codec.method_path(method),
            request_serializer=codec.encode,
            response_deserializer=codec.decode,
        )
        return await rpc(request or {}, metadata=self._metadata())

    async def login(self, email: str, password: str, username: Optional[str] = None) -> dict:
        if username:
            resp = await self.call("RegisterUser", {"username": username, "email": email, "password": password})
        else:
            resp = await self.call("LoginUser", {"email": email, "password": password})
        self.token, self.user = resp["token"], resp["user"]
        return resp

    def open_stream(self, outgoing):
        return self._open_stream(outgoing, metadata=self._metadata())


def _print_event(event: str, data):
    """Render one server event on the console."""
    if event == "new-message":
        print(f"[general] {data.get('username')}: {data.get('message')}")
    elif event == "new-private-message":
        print(f"[DM] from {data.get('from')} <{data.get('fromEmail')}>: {data.get('message')}")
    elif event == "private-message-sent":
        print(f"[DM] to {data.get('to')}: {data.get('message')} ({data.get('status')})")
    elif event == "message-delivered-receipt":
        print(f"[receipt] delivered to {data.get('to')}")
    elif event == "message-read-receipt":
        print(f"[receipt] read by {data.get('from')}")
    elif event == "new-hotspot-message":
        print(f"[hotspot {data.get('networkId')}] {data.get('color')} User: {data.get('message')}")
    elif event in ("hotspot-group-available", "joined-hotspot-group"):
        print(f"[hotspot] {event}: network {data.get('networkId')} as {data.get('assignedColor')} "
              f"({data.get('userCount')} joined)")
    elif event == "group-message":
        print(f"[group {data.get('groupId')}] {data.get('senderName')}: {data.get('message')}")
    elif event == "group-messages":
        for m in data or []:
            print(f"  [{m.get('type')}] {m.get('senderName')}: {m.get('message')}")
    elif event == "groups-list":
        if not data:
            print("[groups] No groups found")
        for g in data or []:
            print(f" - {g.get('name')} id={g.get('id')} members={','.join(g.get('members', []))}")
    elif event == "group-created":
        print(f"[group] Created {data.get('name')} id={data.get('id')}")
    elif event == "online-users-updated":
        print(f"[online] {', '.join(u.get('username', '') for u in data or [])}")
    elif event in ("user-joined", "user-left", "user-joined-hotspot", "user-left-hotspot"):
        print(f"[info] {data.get('message')}")
    elif event in ("error", "group-creation-error", "user-not-found"):
        print(f"[error] {event}: {data.get('message') or data.get('email')}")
    else:
        print(f"[IN] {event} {data}")


HELP = ("Commands:\n"
        "  /general                      join the general room\n"
        "  /say <message>                send to the general room\n"
        "  /dm <email> <message>         private message\n"
        "  /open <email>                 open a conversation (sends a read receipt)\n"
        "  /history <email>              private history\n"
        "  /hotspot-detect <networkId>   join a hotspot network manually\n"
        "  /hotspot-join                 enter the hotspot room\n"
        "  /hotspot <message>            send to the hotspot room\n"
        "  /create-group <name> <email,email,...>\n"
        "  /groups                       list my groups\n"
        "  /join-group <id>\n"
        "  /group <id> <message>\n"
        "  /search <query>               search messages\n"
        "  /users [query]                list or search users\n"
        "  /unread                       unread private messages\n"
        "  /chats                        recent conversations\n"
        "  /help")


async def outgoing(inbox: asyncio.Queue, client: ChatClient, state: ConversationState):
    """Generate outgoing stream envelopes.

    The inbox carries typed lines (str), envelopes queued by the reader
    such as read receipts (dict), and None once input is exhausted.
    Envelopes go out as soon as they arrive; stream commands (/say, /dm,
    /open, /group, /hotspot, ...) become envelopes; request/response
    commands (/history, /search, /users, /unread, /chats, /help) are run
    inline.

    Yields:
        dict: Envelopes {"event": ..., "data": ...}
    """
    while True:
        item = await inbox.get()
        if item is None:
            return
        if isinstance(item, dict):
            yield item
            continue
        line = item.strip()
        if not line:
            continue

        m = re.match(r"^/dm\s+(\S+)\s+(.+)$", line)
        if m:
            state.queue_outbound(m.group(1), m.group(2))
            yield {"event": "send-private-message", "data": {"to": m.group(1), "content": m.group(2)}}
            continue
        m = re.match(r"^/say\s+(.+)$", line)
        if m:
            yield {"event": "send-message", "data": {"content": m.group(1)}}
            continue
        m = re.match(r"^/hotspot\s+(.+)$", line)
        if m:
            yield {"event": "send-hotspot-message", "data": {"content": m.group(1)}}
            continue
        m = re.match(r"^/hotspot-detect\s+(\S+)$", line)
        if m:
            yield {"event": "detect-network", "data": {"networkId": m.group(1)}}
            continue
        m = re.match(r"^/create-group\s+(.+?)\s+(\S+@\S+)$", line)
        if m:
            members = [e for e in m.group(2).split(",") if e]
            yield {"event": "create-group", "data": {"name": m.group(1), "members": members,
                                                     "createdBy": client.user["email"]}}
            continue
        m = re.match(r"^/join-group\s+(\S+)$", line)
        if m:
            yield {"event": "join-group", "data": {"groupId": m.group(1)}}
            continue
        m = re.match(r"^/group\s+(\S+)\s+(.+)$", line)
        if m:
            yield {"event": "send-group-message", "data": {"groupId": m.group(1), "content": m.group(2)}}
            continue
        m = re.match(r"^/open\s+(\S+)$", line)
        if m:
            yield state.activate(m.group(1))
            continue
        if line == "/general":
            yield {"event": "join-general-chat", "data": {}}
            continue
        if line == "/hotspot-join":
            yield {"event": "join-hotspot-group", "data": {}}
            continue
        if line == "/groups":
            yield {"event": "get-groups", "data": {}}
            continue

        try:
            if await _rpc_command(client, state, line):
                continue
        except grpc.aio.AioRpcError as e:
            print(f"[error] {e.details()}")
            continue
        print('Type "/help" for commands.')


async def read_input(inbox: asyncio.Queue):
    """Feed console lines into the inbox until EOF."""
    loop = asyncio.get_running_loop()
    while True:
        try:
            line = await loop.run_in_executor(None, input, "")
        except EOFError:
            await inbox.put(None)
            return
        await inbox.put(line)


async def _run(email: str, password: str, host: str, port: int, username: Optional[str]):
    """Main client loop: sign in, open the event stream, read commands.

    Args:
        email (str): Account email
        password (str): Account password
        host (str): Chat server hostname
        port (int): Chat server port
        username (Optional[str]): Register a new account with this name first
    """
    chan = aio.insecure_channel(f"{host}:{port}")
    client = ChatClient(chan)
    try:
        await client.login(email, password, username)
    except grpc.aio.AioRpcError as e:
        print(f"Login failed: {e.details()}")
        return
    print(f"Logged in as {client.user['username']} <{client.user['email']}>")
    state = ConversationState(client.user["email"])
    inbox: asyncio.Queue = asyncio.Queue()

    async def reader(call):
        async for env in call:
            event, data = env.get("event"), env.get("data")
            reply = state.apply(event, data)
            if reply:
                inbox.put_nowait(reply)
            _print_event(event, data)

    input_task = asyncio.create_task(read_input(inbox))
    call = client.open_stream(outgoing(inbox, client, state))
    try:
        await reader(call)
    except grpc.aio.AioRpcError as e:
        print(f"Disconnected: {e.details()}")
    finally:
        input_task.cancel()
        await chan.close()


async def _rpc_command(client: ChatClient, state: ConversationState, line: str) -> bool:
    """Run a request/response command. Returns False if the line is not one."""
    m = re.match(r"^/history\s+(\S+)$", line)
    if m:
        resp = await client.call("GetPrivateMessages", {"recipientEmail": m.group(1)})
        for msg in resp.get("messages", []):
            print(f"  {msg.get('username')}: {msg.get('message')} ({msg.get('status')})")
        return True
    m = re.match(r"^/search\s+(.+)$", line)
    if m:
        resp = await client.call("SearchMessages", {"query": m.group(1)})
        for msg in resp.get("messages", []):
            print(f"  [{msg.get('type')}] {msg.get('username')}: {msg.get('message')}")
        print(f"[search] {resp.get('count', 0)} result(s)")
        return True
    m = re.match(r"^/users(?:\s+(.+))?$", line)
    if m:
        if m.group(1):
            resp = await client.call("SearchUsers", {"q": m.group(1)})
        else:
            resp = await client.call("ListUsers")
        for u in resp.get("users", []):
            print(f" - {u.get('username')} <{u.get('email')}> {'online' if u.get('isOnline') else ''}")
        return True
    if line == "/unread":
        resp = await client.call("UnreadCount")
        print(f"[unread] {resp.get('unreadCount', 0)}")
        return True
    if line == "/chats":
        for chat in state.chats.values():
            status = chat.message_status.value if chat.message_status else "-"
            print(f" - {chat.email}: {chat.last_message!r} status={status} unread={chat.unread_count}")
        return True
    if line in {"/help", "help"}:
        print(HELP)
        return True
    return False


@app.command("run")
def run_cmd(
    email: str = typer.Option(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    host: str = "127.0.0.1",
    port: int = Config.PORT,
    register: Optional[str] = typer.Option(None, help="Register first with this username"),
):
    """
    Run the chat client.
    """
    asyncio.run(_run(email, password, host, port, register))


@app.command("health")
def health_cmd(host: str = "127.0.0.1", port: int = Config.PORT):
    """
    Ask a running server for its status.
    """
    async def check():
        async with aio.insecure_channel(f"{host}:{port}") as chan:
            return await ChatClient(chan).call("Health")

    try:
        resp = asyncio.run(check())
    except grpc.aio.AioRpcError as e:
        print(f"Server unavailable: {e.details()}")
        raise typer.Exit(code=1)
    print(f"status={resp.get('status')} online={resp.get('online')} hotspots={resp.get('hotspots')}")


if __name__ == "__main__":
    app()
