from .protocol import Envelope, OpCode, decode, encode
from .server import ConnectionRegistry, SignalingServer
from .client import BroadcasterSession, Status, ViewerSession

__all__ = [
    "BroadcasterSession",
    "ConnectionRegistry",
    "Envelope",
    "OpCode",
    "SignalingServer",
    "Status",
    "ViewerSession",
    "decode",
    "encode",
]
