"""Shared fakes for relay and session tests."""

import asyncio
import json
from typing import List

import pytest
from websockets.exceptions import ConnectionClosedOK

from splitsignal.errors import NegotiationFailure
from splitsignal.server import SignalingServer


class FakeRequest:
    def __init__(self, path: str):
        self.path = path


class FakeWebSocket:
    """In-memory stand-in for a websockets connection (either side)."""

    def __init__(self, path: str = "/", remote_address=("127.0.0.1", 50000), messages=()):
        self.request = FakeRequest(path)
        self.remote_address = remote_address
        self.sent: List[str] = []
        self.closed = False
        self.incoming: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.incoming.put_nowait(message)

    def feed(self, *frames):
        for frame in frames:
            self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def envelopes(self) -> List[dict]:
        return [json.loads(raw) for raw in self.sent]

    async def send(self, raw: str):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(raw)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()


class StalledCloseWebSocket(FakeWebSocket):
    """close() blocks until ``release`` is set, like a peer that never answers the close frame."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()
        self.closing = False

    async def close(self):
        self.closing = True
        await self.release.wait()
        await super().close()


class FakeBridge:
    OFFER = {"type": "offer", "sdp": "v=0 offer"}
    ANSWER = {"type": "answer", "sdp": "v=0 answer"}
    CANDIDATE = {"candidate": "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    def __init__(self, ice_servers=None, media_source=None, on_candidate=None, on_track=None, on_ended=None,
                 fail=(), gate=None):
        self.ice_servers = ice_servers
        self.media_source = media_source
        self.on_candidate = on_candidate
        self.on_track = on_track
        self.on_ended = on_ended
        self.fail = set(fail)
        self.gate = gate
        self.started = False
        self.closed = False
        self.remote_descriptions = []
        self.candidates = []
        self.local_tracks = []

    def _check(self, name):
        if name in self.fail:
            raise NegotiationFailure(f"{name} failed")

    async def start(self):
        if self.gate is not None:
            await self.gate.wait()
        self._check("start")
        self.started = True

    async def add_local_media(self):
        self._check("add_local_media")
        self.local_tracks = ["video-track"]
        return self.local_tracks

    async def create_offer(self):
        self._check("create_offer")
        await self.on_candidate(self.CANDIDATE)
        await self.on_candidate(None)
        return dict(self.OFFER)

    async def create_answer(self):
        self._check("create_answer")
        return dict(self.ANSWER)

    async def apply_remote_description(self, data):
        self._check("apply_remote_description")
        self.remote_descriptions.append(data)
        return data["type"]

    async def add_candidate(self, data):
        self._check("add_candidate")
        self.candidates.append(data)

    async def close(self):
        self.closed = True


class BridgeFactory:
    def __init__(self):
        self.created: List[FakeBridge] = []
        self.fail = set()
        self.gate = None

    def __call__(self, **kwargs):
        bridge = FakeBridge(fail=self.fail, gate=self.gate, **kwargs)
        self.created.append(bridge)
        return bridge


@pytest.fixture
def server() -> SignalingServer:
    return SignalingServer()


@pytest.fixture
def bridge_factory() -> BridgeFactory:
    return BridgeFactory()


async def connect(server: SignalingServer, path: str = "/", remote_address=("127.0.0.1", 50000)):
    websocket = FakeWebSocket(path=path, remote_address=remote_address)
    connection = await server.admit(websocket)
    return websocket, connection


async def join(server: SignalingServer, path: str = "/"):
    websocket, connection = await connect(server, path)
    await server.dispatch(connection, json.dumps({"type": "join"}))
    return websocket, connection
