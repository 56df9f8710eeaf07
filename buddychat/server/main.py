import asyncio
from typing import Optional
import typer
from grpc import aio
from .config import ServerConfig
from ..proto import chat_pb2_grpc
from .service import ChatService, logger  # Reuse the same logger
from .repo import UsersRepo, GroupStore
from .membership import MembershipService
from .rooms import RoomRegistry
from .gateway import ChatGateway
from .hub import Hub

app = typer.Typer(help="Group chat server")


def build_service(config: ServerConfig) -> ChatService:
    """Wire repositories, registry, hub and gateway into a servicer.

    The room registry and hub are created here, empty, and live exactly as
    long as the returned service.
    """
    users_repo = UsersRepo(config.users_path)
    store = GroupStore(config.groups_path)
    membership = MembershipService(store)
    rooms = RoomRegistry()
    hub = Hub()
    gateway = ChatGateway(store, membership, rooms, hub, users=users_repo, history_limit=config.history_limit)
    return ChatService(users_repo, store, membership, gateway, hub)


async def serve(config: ServerConfig):
    """Start the chat server and block until it terminates.

    Side Effects:
        - Creates data directories if needed
        - Starts gRPC server
        - Logs server startup progress
    """
    server = aio.server()
    chat_pb2_grpc.add_ChatServiceServicer_to_server(build_service(config), server)
    server.add_insecure_port(config.listen_addr)
    logger.info(f"Server starting, listening on {config.listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {config.listen_addr}")
    try:
        await server.wait_for_termination()
    finally:
        await server.stop(grace=1)
        logger.info("Server stopped")


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, help="Interface to bind (env BUDDYCHAT_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port to listen on (env BUDDYCHAT_PORT)"),
    data_dir: Optional[str] = typer.Option(None, help="Directory for JSONL data (env BUDDYCHAT_DATA_DIR)"),
    history_limit: Optional[int] = typer.Option(None, help="Messages replayed on join, 0 for all (env BUDDYCHAT_HISTORY_LIMIT)"),
):
    """Run the chat server."""
    config = ServerConfig.from_env()
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if data_dir is not None:
        config.data_dir = data_dir
    if history_limit is not None:
        config.history_limit = history_limit
    asyncio.run(serve(config))


if __name__ == "__main__":
    app()
