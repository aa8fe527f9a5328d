"""Command-line viewer and broadcaster.

The viewer streams a file or capture device to the broadcaster; the
broadcaster records each viewer's stream (or discards it with no
``--record-dir``).
"""
import argparse
import asyncio
import logging
import os

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from .client import BroadcasterSession, Status, ViewerSession
from .errors import SignalingError
from .logging_config import configure_logging
from .media import MediaCapture
from .settings import ClientSettings

logger = logging.getLogger(__name__)


def run_viewer(settings: ClientSettings, args) -> ViewerSession:
    capture = MediaCapture(
        args.source,
        format=args.format,
        video=not args.no_video,
        audio=not args.no_audio,
        loop=args.loop,
    )
    session = ViewerSession(
        settings.url,
        media_source=capture,
        retry_delay=settings.retry_delay,
        max_retry_delay=settings.max_retry_delay,
        ice_servers=settings.ice_servers,
    )

    pending = set()

    async def start_transmit():
        try:
            await session.transmit()
        except SignalingError as e:
            logger.warning(f"Could not start transmitting: {e.message}")

    @session.on("status")
    def on_status(status):
        # start transmitting as soon as the relay has registered us
        if status is Status.REGISTERED and session.bridge is None:
            task = asyncio.ensure_future(start_transmit())
            pending.add(task)
            task.add_done_callback(pending.discard)

    @session.on("video")
    def on_video(tracks):
        logger.info(f"Transmitting {len(tracks)} local tracks")

    return session


def run_broadcaster(settings: ClientSettings, args) -> BroadcasterSession:
    session = BroadcasterSession(
        settings.broadcaster_url,
        retry_delay=settings.retry_delay,
        max_retry_delay=settings.max_retry_delay,
        ice_servers=settings.ice_servers,
    )
    sinks = {}

    @session.on("video")
    def on_video(peer, track):
        sink = sinks.get(peer)
        if sink is None:
            if args.record_dir:
                os.makedirs(args.record_dir, exist_ok=True)
                sink = MediaRecorder(os.path.join(args.record_dir, f"{peer}.mp4"))
            else:
                sink = MediaBlackhole()
            sinks[peer] = sink
        sink.addTrack(track)
        asyncio.ensure_future(sink.start())

    @session.on("status")
    def on_status(status):
        if status in (Status.REGISTERED, Status.DISCONNECTED):
            for peer in [p for p in sinks if p not in session.peers]:
                asyncio.ensure_future(sinks.pop(peer).stop())

    return session


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Signaling client")
    parser.add_argument("--url", help="relay websocket url")
    parser.add_argument("--retry-delay", type=float)
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="role", required=True)

    viewer = sub.add_parser("viewer", help="send local media to the broadcaster")
    viewer.add_argument("source", help="file, url or capture device")
    viewer.add_argument("--format", help="ffmpeg input format, e.g. v4l2")
    viewer.add_argument("--loop", action="store_true")
    viewer.add_argument("--no-video", action="store_true")
    viewer.add_argument("--no-audio", action="store_true")

    broadcaster = sub.add_parser("broadcaster", help="receive media from every viewer")
    broadcaster.add_argument("--broadcaster-path")
    broadcaster.add_argument("--record-dir")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    settings = ClientSettings.from_env(
        url=args.url,
        retry_delay=args.retry_delay,
        log_level=args.log_level,
        broadcaster_path=getattr(args, "broadcaster_path", None),
    )
    configure_logging(settings.log_level)

    if args.role == "viewer":
        session = run_viewer(settings, args)
    else:
        session = run_broadcaster(settings, args)

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(session.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(session.stop())
        loop.close()


if __name__ == "__main__":
    main()
