import asyncio, re, time, typer
import grpc
from grpc import aio
from ..proto import chat_pb2, chat_pb2_grpc
from ..server import protocol

app = typer.Typer(help="Simple gRPC group chat client")

HELP = ("Commands:\n"
        "  /search <query>               find groups by name or purpose\n"
        "  /create <name> | <purpose>    create a group\n"
        "  /join <groupId>               become a member of a group\n"
        "  /groups                       list groups you belong to\n"
        "  /open <groupId>               subscribe to a group's live messages\n"
        "  /say <groupId> <message>      send to a specific group\n"
        "  <message>                     send to the last opened group\n"
        "  /help")


def _fmt_ts(ts: int) -> str:
    return time.strftime("%H:%M:%S", time.localtime(ts / 1000))


def _send(group_id: str, text: str) -> chat_pb2.Envelope:
    return chat_pb2.Envelope(event=protocol.SEND_MESSAGE, send=chat_pb2.SendMessage(group_id=group_id, message=text))


def _print_groups(tag: str, groups: list):
    if not groups:
        print(f"[{tag}] No groups found")
        return
    for g in groups:
        purpose = f" - {g.purpose}" if g.purpose else ""
        print(f"[{tag}] {g.name} ({g.id}){purpose} members={len(g.member_ids)}")


async def _run(display_name: str, host: str, port: int, register: bool = False):
    """Main client loop handling connection and chat operations.

    Connects to chat server and provides interactive CLI interface for:
    - User registration/login
    - Group creation, search and membership
    - Live group messaging

    Args:
        display_name (str): User's display name (will prompt if empty)
        host (str): Chat server hostname
        port (int): Chat server port
        register (bool): True to register new user, False to try login first
    """
    chan = aio.insecure_channel(f"{host}:{port}")
    stub = chat_pb2_grpc.ChatServiceStub(chan)

    user_id = None

    if not display_name:
        display_name = input("Enter your display name: ").strip()

    # Try login first if not registering
    if not register:
        try:
            login_response = await stub.LoginUser(chat_pb2.LoginRequest(display_name=display_name))
            if login_response.success:
                user_id = login_response.user_id
                print(f"Logged in as {display_name} ({user_id})")
            else:
                print(f"Login failed: {login_response.error_message}")
                if input("Would you like to register as a new user? (y/n): ").lower() == 'y':
                    register = True
                else:
                    return
        except grpc.aio.AioRpcError as e:
            print(f"Error during login: {e.details()}")
            return

    if register:
        try:
            reg = await stub.RegisterUser(chat_pb2.RegisterRequest(display_name=display_name))
            user_id = reg.user_id
            print(f"Registered as {display_name} ({user_id})")
        except grpc.aio.AioRpcError as e:
            print(f"Error during registration: {e.details()}")
            return

    if not user_id:
        print("Error: Failed to obtain user ID")
        return

    current = {"group": None}

    async def outgoing():
        """Turn user input into stream envelopes, handling unary commands inline."""
        yield chat_pb2.Envelope(event=protocol.CONNECT, connect=chat_pb2.Connect(user_id=user_id))

        loop = asyncio.get_running_loop()
        while True:
            line = (await loop.run_in_executor(None, input, "")).strip()
            if not line:
                continue

            try:
                if line.startswith("/search"):
                    resp = await stub.SearchGroups(chat_pb2.SearchGroupsRequest(query=line[len("/search"):].strip()))
                    _print_groups("search", resp.groups)
                    continue

                if line.startswith("/create "):
                    name, _, purpose = line[len("/create "):].partition("|")
                    resp = await stub.CreateGroup(chat_pb2.CreateGroupRequest(
                        user_id=user_id, name=name.strip(), purpose=purpose.strip()))
                    if resp.success:
                        print(f"[group] Created group {name.strip()} ({resp.group_id})")
                    else:
                        print(f"[error] Failed to create group: {resp.error_message}")
                    continue

                if line.startswith("/join "):
                    group_id = line[len("/join "):].strip()
                    resp = await stub.JoinGroup(chat_pb2.JoinGroupRequest(user_id=user_id, group_id=group_id))
                    if not resp.success:
                        print(f"[error] Failed to join group: {resp.error_message}")
                    elif resp.added:
                        print(f"[group] Joined group {group_id}")
                    else:
                        print(f"[group] Already a member of {group_id}")
                    continue

                if line == "/groups":
                    resp = await stub.ListUserGroups(chat_pb2.ListUserGroupsRequest(user_id=user_id))
                    _print_groups("groups", resp.groups)
                    continue
            except grpc.aio.AioRpcError as e:
                print(f"[error] RPC failed: {e.details()}")
                continue

            if line.startswith("/open "):
                group_id = line[len("/open "):].strip()
                current["group"] = group_id
                yield chat_pb2.Envelope(event=protocol.JOIN_GROUP_EVENT, group_id=group_id)
                continue

            m = re.match(r"^/say\s+(\S+)\s+(.+)$", line)
            if m:
                yield _send(m.group(1), m.group(2))
                continue

            if line in {"/help", "help"}:
                print(HELP)
                continue

            if line.startswith("/"):
                print('Type "/help" for commands.')
                continue

            if current["group"] is None:
                print("[hint] /open a group first")
                continue
            yield _send(current["group"], line)

    async def reader(call):
        """Print every event the server streams back."""
        async for env in call:
            if env.event == protocol.RECEIVE_MESSAGE:
                m = env.message
                print(f"[{m.group_id} {_fmt_ts(m.sent_ts)}] {m.sender_name}: {m.text}")
            elif env.event == protocol.JOINED_GROUP:
                print(f"[group] Now in {env.joined.name} ({env.joined.group_id})")
                for h in env.joined.history:
                    print(f"  [{_fmt_ts(h.sent_ts)}] {h.sender_name}: {h.text}")
            elif env.event == protocol.ERROR:
                print(f"[error] {env.error.event} {env.error.group_id}: {env.error.detail}")
            elif env.event == protocol.CONNECTED:
                print(f"[connected] session {env.connected.session_id}")
            else:
                print(f"[IN] {env}")

    call = stub.OpenStream(outgoing())
    try:
        await reader(call)
    except grpc.aio.AioRpcError as e:
        print(f"[error] Stream closed: {e.details()}")
    finally:
        await chan.close()


@app.command("run")
def run_cmd(
    name: str = "",
    host: str = "127.0.0.1",
    port: int = 50051,
    register: bool = False
):
    """
    Run the chat client.

    Args:
        name: Display name to use
        host: Server hostname
        port: Server port
        register: If True, register as new user. If False, try to login first
    """
    asyncio.run(_run(name, host, port, register))

if __name__ == "__main__":
    app()
