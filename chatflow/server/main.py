import asyncio
from grpc import aio

from ..config import Config
from .repo import Store
from .service import ChatService, build_handler, logger  # Reuse the same logger


async def serve(host=None, port=None, data_dir=None):
    """Start the chat server.

    Sets up and runs the gRPC server with the chat service. Initializes:
    - JSONL store (users, messages, groups, group messages)
    - Chat service (hub, session registry, hotspot groups, pipeline)

    Args:
        host (str): Hostname to bind server to. Defaults to Config.HOST.
        port (int): Port number to listen on. Defaults to Config.PORT.
        data_dir (str): Directory for the JSONL files. Defaults to Config.DATA_DIR.

    Side Effects:
        - Creates data directories if needed
        - Starts gRPC server
        - Logs server startup progress
    """
    host = host or Config.HOST
    port = port or Config.PORT
    store = Store(data_dir or Config.DATA_DIR)
    service = ChatService(store)

    server = aio.server()
    server.add_generic_rpc_handlers((build_handler(service),))
    listen_addr = f"{host}:{port}"
    server.add_insecure_port(listen_addr)
    logger.info(f"Server starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {listen_addr}")
    await server.wait_for_termination()


def main():
    asyncio.run(serve())


if __name__ == "__main__":
    main()
