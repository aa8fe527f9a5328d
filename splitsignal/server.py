import asyncio
import ipaddress
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from websockets.exceptions import ConnectionClosed

from .errors import DecodeError, ProtocolViolation, SignalingError, UnknownPeer
from .protocol import Envelope, OpCode, decode, make_envelope
from .settings import DEFAULT_BROADCASTER_PATH

logger = logging.getLogger(__name__)

BROADCASTER_ID = "server"


class Role(Enum):
    UNIDENTIFIED = "unidentified"
    BROADCASTER = "broadcaster"
    VIEWER = "viewer"


@dataclass(eq=False)
class Connection:
    identifier: str
    websocket: Any
    role: Role = Role.UNIDENTIFIED
    remote_address: Optional[str] = None

    async def send(self, raw: str) -> bool:
        try:
            await self.websocket.send(raw)
            return True
        except ConnectionClosed:
            logger.info(f"Dropped message to {self.identifier}: connection closed")
            return False

    async def close(self):
        await self.websocket.close()


@dataclass
class ConnectionRegistry:
    """Relay-side authority over who is connected and in which role."""

    broadcaster: Optional[Connection] = None
    viewers: Dict[str, Connection] = field(default_factory=dict)
    connections: Dict[str, Connection] = field(default_factory=dict)

    def new_identifier(self) -> str:
        while True:
            identifier = secrets.token_urlsafe(12)
            if identifier != BROADCASTER_ID and identifier not in self.connections:
                return identifier

    def register(self, connection: Connection):
        self.connections[connection.identifier] = connection

    def claim_broadcaster(self, connection: Connection) -> bool:
        if self.broadcaster is not None:
            return False
        connection.identifier = BROADCASTER_ID
        connection.role = Role.BROADCASTER
        self.broadcaster = connection
        return True

    def is_broadcaster(self, connection: Connection) -> bool:
        return self.broadcaster is not None and self.broadcaster is connection

    def add_viewer(self, connection: Connection):
        if connection.identifier == BROADCASTER_ID:
            raise ProtocolViolation("The broadcaster cannot join as a viewer")
        connection.role = Role.VIEWER
        self.viewers[connection.identifier] = connection

    def remove_viewer(self, identifier: str) -> Optional[Connection]:
        return self.viewers.pop(identifier, None)

    def is_viewer(self, connection: Connection) -> bool:
        return self.viewers.get(connection.identifier) is connection

    def get_viewer(self, identifier) -> Connection:
        viewer = self.viewers.get(identifier) if isinstance(identifier, str) else None
        if viewer is None:
            raise UnknownPeer(identifier)
        return viewer

    def unregister(self, connection: Connection):
        if self.connections.get(connection.identifier) is connection:
            del self.connections[connection.identifier]

    def clear(self) -> List[Connection]:
        """Drop every connection and return the ones other than the broadcaster."""
        remaining = [c for c in self.connections.values() if c is not self.broadcaster]
        self.broadcaster = None
        self.viewers.clear()
        self.connections.clear()
        return remaining


class SignalingServer:
    """Routes envelopes between the single broadcaster and its viewers.

    Admission, every dispatched message and every disconnect run under one
    lock, so a message is fully routed before the next one is looked at.
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        broadcaster_path: str = DEFAULT_BROADCASTER_PATH,
        allowed_networks: Optional[Iterable[str]] = None,
    ):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.broadcaster_path = broadcaster_path
        self.allowed_networks = [ipaddress.ip_network(n, strict=False) for n in allowed_networks or ()]
        self.lock = asyncio.Lock()

    def is_allowed_origin(self, remote_address: Optional[str]) -> bool:
        if not self.allowed_networks:
            return True
        if remote_address is None:
            return False
        try:
            address = ipaddress.ip_address(remote_address)
        except ValueError:
            return False
        return any(address in network for network in self.allowed_networks)

    async def handle_client(self, websocket):
        connection = await self.admit(websocket)
        if connection is None:
            return
        try:
            async for message in websocket:
                await self.dispatch(connection, message)
        except ConnectionClosed:
            logger.info(f"Connection {connection.identifier} lost")
        finally:
            await self.handle_disconnect(connection)

    async def admit(self, websocket) -> Optional[Connection]:
        path = _request_path(websocket)
        remote_address = _remote_host(websocket)

        async with self.lock:
            connection = self._admit(websocket, path, remote_address)
            if connection is not None:
                await connection.send(make_envelope(OpCode.HELLO, {"id": connection.identifier}))
                return connection
        # never close while holding the lock
        await websocket.close()
        return None

    def _admit(self, websocket, path: Optional[str], remote_address: Optional[str]) -> Optional[Connection]:
        registry = self.registry
        connection = Connection(
            identifier=registry.new_identifier(),
            websocket=websocket,
            remote_address=remote_address,
        )

        if (
            path == self.broadcaster_path
            and registry.broadcaster is None
            and self.is_allowed_origin(remote_address)
        ):
            registry.claim_broadcaster(connection)
            logger.info(f"Broadcaster logged in from {remote_address}")

        if registry.broadcaster is None:
            logger.info(f"Rejected {remote_address}: no broadcaster is connected")
            return None
        if path == self.broadcaster_path and connection.role is not Role.BROADCASTER:
            logger.warning(f"Broadcaster path claimed by {remote_address} while a broadcaster is active")
            return None

        registry.register(connection)
        return connection

    async def dispatch(self, connection: Connection, raw):
        async with self.lock:
            try:
                envelope = decode(raw)
                await self.route(connection, envelope, raw)
            except DecodeError as e:
                logger.warning(f"Dropped frame from {connection.identifier}: {e.message}")
            except SignalingError as e:
                logger.info(f"Dropped {type(e).__name__} from {connection.identifier}: {e.message}")

    async def route(self, connection: Connection, envelope: Envelope, raw):
        if envelope.type is OpCode.JOIN:
            await self.handle_join(connection)
        elif envelope.type is OpCode.CLIENT_MESSAGE:
            await self.handle_client_message(connection, envelope)
        elif envelope.type is OpCode.SERVER_MESSAGE:
            await self.handle_server_message(connection, envelope, raw)
        elif envelope.type is OpCode.CLIENT_DISCONNECT:
            await self.handle_leave(connection)
        else:
            raise ProtocolViolation(f"{envelope.type.value} is not accepted by the relay")

    async def handle_join(self, connection: Connection):
        registry = self.registry
        if registry.is_broadcaster(connection):
            raise ProtocolViolation("The broadcaster cannot join")
        if registry.is_viewer(connection):
            raise ProtocolViolation(f"{connection.identifier} already joined")
        if registry.broadcaster is None:
            logger.info(f"Client {connection.identifier} couldn't join: no broadcaster is connected")
            await connection.send(make_envelope(OpCode.JOIN_REJECT))
            return

        registry.add_viewer(connection)
        logger.info(f"Client {connection.identifier} joined the stream")
        await connection.send(make_envelope(OpCode.JOIN_ACK))
        await registry.broadcaster.send(make_envelope(OpCode.CLIENT_JOIN, {"peer": connection.identifier}))

    async def handle_client_message(self, connection: Connection, envelope: Envelope):
        registry = self.registry
        if not registry.is_viewer(connection):
            raise ProtocolViolation(f"client_message from {connection.identifier} which has not joined")
        data = envelope.data if envelope.data is not None else {}
        if not isinstance(data, dict):
            raise ProtocolViolation("client_message data must be an object")
        if registry.broadcaster is None:
            return
        # peer is always the sender as seen by the relay
        forwarded = {**data, "peer": connection.identifier}
        await registry.broadcaster.send(make_envelope(OpCode.CLIENT_MESSAGE, forwarded))

    async def handle_server_message(self, connection: Connection, envelope: Envelope, raw):
        registry = self.registry
        if not registry.is_broadcaster(connection):
            raise ProtocolViolation(f"server_message from non-broadcaster {connection.identifier}")
        data = envelope.data
        if not isinstance(data, dict) or "peer" not in data:
            raise ProtocolViolation("server_message without a peer")
        viewer = registry.get_viewer(data["peer"])
        await viewer.send(raw if isinstance(raw, str) else raw.decode("utf-8"))
        logger.debug(f"Broadcaster sent to {viewer.identifier}")

    async def handle_leave(self, connection: Connection):
        if not self.registry.is_viewer(connection):
            raise ProtocolViolation(f"client_disconnect from {connection.identifier} which has not joined")
        await self.remove_viewer(connection)

    async def remove_viewer(self, connection: Connection):
        registry = self.registry
        registry.remove_viewer(connection.identifier)
        logger.info(f"Client {connection.identifier} left the stream")
        if registry.broadcaster is not None:
            await registry.broadcaster.send(
                make_envelope(OpCode.CLIENT_DISCONNECT, {"peer": connection.identifier})
            )

    async def handle_disconnect(self, connection: Connection):
        remaining: List[Connection] = []
        async with self.lock:
            registry = self.registry
            if registry.is_broadcaster(connection):
                remaining = registry.clear()
                logger.info(f"Broadcaster disconnected, closing {len(remaining)} connections")
            else:
                if registry.is_viewer(connection):
                    await self.remove_viewer(connection)
                registry.unregister(connection)
        if remaining:
            await asyncio.gather(*(c.close() for c in remaining))


def _request_path(websocket) -> Optional[str]:
    request = getattr(websocket, "request", None)
    if request is None:
        return None
    return request.path.split("?", 1)[0]


def _remote_host(websocket) -> Optional[str]:
    remote = getattr(websocket, "remote_address", None)
    if not remote:
        return None
    return remote[0]
