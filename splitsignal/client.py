"""Client side of the signaling protocol.

A session owns one websocket to the relay and walks it through
``Connecting -> Registered -> Joined -> Negotiating -> Active``. Any transport,
decode or negotiation failure goes through :meth:`ClientSession.restart`,
which drops everything and reconnects with a growing backoff.
"""
import asyncio
import functools
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

import websockets
from pyee import EventEmitter
from websockets.exceptions import ConnectionClosed, WebSocketException

from .bridge import MediaSource, NegotiationBridge
from .errors import (
    DecodeError,
    InvalidStateError,
    NegotiationFailure,
    ProtocolViolation,
    TransportError,
    UnknownPeer,
)
from .protocol import PAYLOAD_ICE, PAYLOAD_SDP, Envelope, OpCode, decode, make_envelope

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class Status(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    REGISTERED = "Registered"
    JOINED = "Joined"
    NEGOTIATING = "Negotiating"
    ACTIVE = "Active"


class ClientSession(EventEmitter):
    """Connection, registration and reconnect logic shared by both roles.

    Emits ``status`` with the new :class:`Status` on every change.
    """

    def __init__(
        self,
        url: str,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        ice_servers: Optional[List[str]] = None,
        bridge_factory: Optional[Callable[..., NegotiationBridge]] = None,
        connect: Optional[Callable] = None,
    ):
        super().__init__()
        self.url = url
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.ice_servers = ice_servers
        self.bridge_factory = bridge_factory or NegotiationBridge
        self.connect = connect or websockets.connect
        self.websocket = None
        self.self_identifier: Optional[str] = None
        self.attempt_count = 0
        # Bumped on every teardown; results from an older epoch are discarded
        self.epoch = 0
        self.running = False
        self.restart_pending = False
        self._status = Status.DISCONNECTED
        self._close_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(f"{__name__}.{type(self).__name__}")

    @property
    def status(self) -> Status:
        return self._status

    @status.setter
    def status(self, value: Status):
        if value is self._status:
            return
        self._status = value
        self.logger.info(f"Status changed to {value.value}")
        self.emit("status", value)

    @property
    def backoff_delay(self) -> float:
        return min(self.attempt_count * self.retry_delay, self.max_retry_delay)

    async def wait_backoff(self):
        delay = self.backoff_delay
        if delay > 0:
            self.logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.attempt_count})")
            await asyncio.sleep(delay)

    async def run(self):
        self.running = True
        while self.running:
            await self.wait_backoff()
            if not self.running:
                break
            await self.connect_once()

    async def connect_once(self):
        self.status = Status.CONNECTING
        self.restart_pending = False
        opened = False
        self.logger.info(f"Connecting to {self.url}")
        try:
            async with self.connect(self.url) as websocket:
                opened = True
                self.websocket = websocket
                async for message in websocket:
                    await self.handle_message(message)
                    if self.restart_pending:
                        break
        except TRANSPORT_ERRORS as e:
            if opened:
                self.logger.info(f"Connection lost: {e}")
            else:
                self.attempt_count += 1
                self.logger.warning(f"Failed to connect to {self.url}: {e}")
        finally:
            if opened and self.self_identifier is None:
                # the relay closed us before hello
                self.attempt_count += 1
                self.logger.warning(f"{self.url} closed the connection before hello")
            await self.teardown()
            self.status = Status.DISCONNECTED

    def restart(self, reason: str):
        """Drop the session and reconnect. Repeated calls before the reconnect are no-ops."""
        if self.restart_pending:
            return
        self.restart_pending = True
        self.logger.warning(f"Restarting session: {reason}")
        if self.websocket is not None:
            self._close_task = asyncio.ensure_future(self.websocket.close())

    async def stop(self):
        self.running = False
        self.restart_pending = True
        if self.websocket is not None:
            await self.websocket.close()

    async def teardown(self):
        self.epoch += 1
        await self.reset()
        self.websocket = None
        self.self_identifier = None

    async def reset(self):
        """Close bridges and release media; overridden per role."""

    async def send(self, op: OpCode, data=None):
        if self.websocket is None:
            self.logger.debug(f"Dropped {op.value}: not connected")
            return
        try:
            await self.websocket.send(make_envelope(op, data))
        except ConnectionClosed as e:
            raise TransportError(f"Failed to send {op.value}: {e}") from e

    async def handle_message(self, raw):
        try:
            envelope = decode(raw)
        except DecodeError as e:
            self.restart(f"decode failure: {e.message}")
            return

        self.logger.debug(f"Received {envelope.type.value}")
        try:
            if envelope.type is OpCode.HELLO:
                self.handle_hello(envelope)
            else:
                await self.handle_envelope(envelope)
        except ProtocolViolation as e:
            self.restart(f"protocol violation: {e.message}")
        except TransportError as e:
            self.restart(e.message)

    def handle_hello(self, envelope: Envelope):
        if self.status is not Status.CONNECTING:
            raise ProtocolViolation(f"hello while {self.status.value}")
        data = envelope.data
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise ProtocolViolation("hello without an id")
        self.self_identifier = data["id"]
        self.attempt_count = 0
        self.logger.info(f"Connection initialized as {self.self_identifier}")
        self.status = Status.REGISTERED

    async def handle_envelope(self, envelope: Envelope):
        raise ProtocolViolation(f"Unexpected {envelope.type.value}")


class ViewerSession(ClientSession):
    """Sends local media to the broadcaster once :meth:`transmit` is called.

    Emits ``video`` with the list of captured local tracks.
    """

    def __init__(self, url: str, media_source: Optional[MediaSource] = None, **kwargs):
        super().__init__(url, **kwargs)
        self.media_source = media_source
        self.bridge: Optional[NegotiationBridge] = None
        self.negotiation: Optional[asyncio.Task] = None

    @property
    def negotiating(self) -> bool:
        return self.negotiation is not None and not self.negotiation.done()

    async def transmit(self):
        if self.status is not Status.REGISTERED or self.bridge is not None or self.websocket is None:
            raise InvalidStateError(f"Can't start a stream while {self.status.value}")
        await self.send(OpCode.JOIN)
        self.status = Status.JOINED

    async def stop_transmit(self):
        if self.bridge is None or self.websocket is None:
            raise InvalidStateError(f"Can't stop a stream while {self.status.value}")
        try:
            await self.send(OpCode.CLIENT_DISCONNECT)
        finally:
            await self.reset()
        self.status = Status.REGISTERED

    async def reset(self):
        self.epoch += 1
        task, self.negotiation = self.negotiation, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        bridge, self.bridge = self.bridge, None
        if bridge is not None:
            await bridge.close()

    async def handle_envelope(self, envelope: Envelope):
        if envelope.type is OpCode.JOIN_ACK:
            self.handle_join_ack()
        elif envelope.type is OpCode.JOIN_REJECT:
            self.logger.warning("Join rejected: no broadcaster is connected")
            if self.status is Status.JOINED:
                self.status = Status.REGISTERED
        elif envelope.type is OpCode.SERVER_MESSAGE:
            await self.handle_server_message(envelope.data)
        else:
            raise ProtocolViolation(f"Unexpected {envelope.type.value} for a viewer")

    def handle_join_ack(self):
        if self.status is not Status.JOINED or self.negotiating or self.bridge is not None:
            self.logger.info(f"Ignored join_ack while {self.status.value}")
            return
        self.status = Status.NEGOTIATING
        self.negotiation = asyncio.create_task(self.negotiate(self.epoch))

    async def negotiate(self, epoch: int):
        self.logger.info("Creating peer connection")
        bridge = self.bridge_factory(
            ice_servers=self.ice_servers,
            media_source=self.media_source,
            on_candidate=functools.partial(self.send_candidate, epoch),
            on_ended=functools.partial(self.on_track_ended, epoch),
        )
        self.bridge = bridge
        try:
            await bridge.start()
            tracks = await bridge.add_local_media()
            if epoch != self.epoch:
                return
            self.emit("video", tracks)
            offer = await bridge.create_offer()
            if epoch != self.epoch:
                return
            await self.send(OpCode.CLIENT_MESSAGE, {"type": PAYLOAD_SDP, "data": offer})
        except NegotiationFailure as e:
            if epoch == self.epoch:
                self.restart(f"negotiation failed: {e.message}")
        except TransportError as e:
            if epoch == self.epoch:
                self.restart(e.message)

    async def send_candidate(self, epoch: int, candidate: Optional[Dict]):
        if epoch != self.epoch:
            return
        if candidate is None:
            self.logger.debug("Found a null ICE candidate")
            return
        await self.send(OpCode.CLIENT_MESSAGE, {"type": PAYLOAD_ICE, "data": candidate})

    def on_track_ended(self, epoch: int, track):
        if epoch == self.epoch and self.status is Status.ACTIVE:
            self.restart(f"local {track.kind} track ended")

    async def handle_server_message(self, data):
        if self.bridge is None:
            self.logger.debug("Ignored server_message without a peer connection")
            return
        if not isinstance(data, dict):
            raise ProtocolViolation("Invalid server payload")

        bridge, epoch = self.bridge, self.epoch
        kind = data.get("type")
        try:
            if kind == PAYLOAD_ICE:
                await bridge.add_candidate(data.get("data"))
            elif kind == PAYLOAD_SDP:
                await bridge.apply_remote_description(data.get("data"))
                if epoch == self.epoch:
                    self.status = Status.ACTIVE
            else:
                raise ProtocolViolation(f"Invalid server payload type {kind!r}")
        except NegotiationFailure as e:
            if epoch == self.epoch:
                self.restart(e.message)


class BroadcasterSession(ClientSession):
    """Answers every viewer's offer with its own peer connection.

    Emits ``video`` with ``(peer, track)`` for each remote track.
    """

    def __init__(self, url: str, **kwargs):
        super().__init__(url, **kwargs)
        self.peers: Dict[str, NegotiationBridge] = {}

    async def reset(self):
        peers, self.peers = self.peers, {}
        for bridge in peers.values():
            await bridge.close()

    async def handle_envelope(self, envelope: Envelope):
        if self.status not in (Status.REGISTERED, Status.ACTIVE):
            raise ProtocolViolation(f"{envelope.type.value} before hello")
        data = envelope.data
        if not isinstance(data, dict) or not isinstance(data.get("peer"), str):
            raise ProtocolViolation(f"{envelope.type.value} without a peer")

        peer = data["peer"]
        try:
            if envelope.type is OpCode.CLIENT_JOIN:
                await self.add_peer(peer)
            elif envelope.type is OpCode.CLIENT_MESSAGE:
                await self.handle_peer_message(peer, data)
            elif envelope.type is OpCode.CLIENT_DISCONNECT:
                self.logger.info(f"Peer {peer} left")
                await self.remove_peer(peer)
            else:
                raise ProtocolViolation(f"Unexpected {envelope.type.value} for the broadcaster")
        except UnknownPeer as e:
            self.logger.info(f"Dropped message: {e.message}")

    async def add_peer(self, peer: str):
        if peer in self.peers:
            self.logger.warning(f"Peer {peer} already joined")
            return
        bridge = self.bridge_factory(ice_servers=self.ice_servers)
        bridge.on_candidate = functools.partial(self.send_candidate, peer, bridge)
        bridge.on_track = functools.partial(self.on_remote_track, peer)
        self.peers[peer] = bridge
        self.logger.info(f"Peer {peer} joined")
        await bridge.start()

    async def remove_peer(self, peer: str):
        bridge = self.peers.pop(peer, None)
        if bridge is not None:
            await bridge.close()
        if not self.peers and self.status is Status.ACTIVE:
            self.status = Status.REGISTERED

    async def handle_peer_message(self, peer: str, data: Dict):
        bridge = self.peers.get(peer)
        if bridge is None:
            raise UnknownPeer(peer)

        kind = data.get("type")
        try:
            if kind == PAYLOAD_SDP:
                description_type = await bridge.apply_remote_description(data.get("data"))
                if description_type == "offer":
                    answer = await bridge.create_answer()
                    if self.peers.get(peer) is bridge:
                        await self.send(OpCode.SERVER_MESSAGE, {"peer": peer, "type": PAYLOAD_SDP, "data": answer})
                        self.status = Status.ACTIVE
            elif kind == PAYLOAD_ICE:
                await bridge.add_candidate(data.get("data"))
            else:
                self.logger.warning(f"Invalid payload type {kind!r} from {peer}")
        except NegotiationFailure as e:
            self.logger.warning(f"Negotiation with {peer} failed: {e.message}")
            if self.peers.get(peer) is bridge:
                await self.remove_peer(peer)

    async def send_candidate(self, peer: str, bridge: NegotiationBridge, candidate: Optional[Dict]):
        if self.peers.get(peer) is not bridge or candidate is None:
            return
        await self.send(OpCode.SERVER_MESSAGE, {"peer": peer, "type": PAYLOAD_ICE, "data": candidate})

    def on_remote_track(self, peer: str, track):
        self.emit("video", peer, track)
