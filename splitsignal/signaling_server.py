import argparse
import asyncio
import logging

import websockets

from .logging_config import configure_logging
from .server import SignalingServer
from .settings import RelaySettings

logger = logging.getLogger(__name__)


async def serve(settings: RelaySettings):
    server = SignalingServer(
        broadcaster_path=settings.broadcaster_path,
        allowed_networks=settings.allowed_networks,
    )
    async with websockets.serve(server.handle_client, settings.host, settings.port):
        logger.info(f"Signaling relay listening on {settings.host}:{settings.port}")
        logger.info(f"Broadcaster path: {settings.broadcaster_path}")
        await asyncio.Future()  # run forever


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Signaling relay between one broadcaster and its viewers")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--broadcaster-path")
    parser.add_argument(
        "--allow",
        action="append",
        dest="allowed_networks",
        metavar="CIDR",
        help="network allowed to connect as broadcaster (repeatable)",
    )
    parser.add_argument("--log-level")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    settings = RelaySettings.from_env(**vars(args))
    configure_logging(settings.log_level)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
