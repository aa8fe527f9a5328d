"""Wire envelope for the signaling protocol.

Every frame is one JSON object ``{"type": <opcode>, "data": <opaque>}``.
``data`` is never inspected here; it is handed through as decoded.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import DecodeError


class OpCode(str, Enum):
    HELLO = "hello"                          # relay > client
    JOIN = "join"                            # client > relay
    CLIENT_MESSAGE = "client_message"        # viewer > relay > broadcaster
    SERVER_MESSAGE = "server_message"        # broadcaster > relay > viewer
    CLIENT_DISCONNECT = "client_disconnect"  # relay > broadcaster, viewer > relay
    JOIN_ACK = "join_ack"                    # relay > viewer
    CLIENT_JOIN = "client_join"              # relay > broadcaster
    JOIN_REJECT = "join_reject"              # relay > viewer


# Negotiation payload kinds carried in data["type"]
PAYLOAD_SDP = "sdp"
PAYLOAD_ICE = "ice"


@dataclass(frozen=True)
class Envelope:
    type: OpCode
    data: Any = None


def encode(envelope: Envelope) -> str:
    frame = {"type": envelope.type.value}
    if envelope.data is not None:
        frame["data"] = envelope.data
    return json.dumps(frame, separators=(",", ":"))


def decode(raw: Union[str, bytes]) -> Envelope:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        frame = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Failed to deserialize payload: {e}") from e

    if not isinstance(frame, dict):
        raise DecodeError("Envelope is not an object")
    if "type" not in frame:
        raise DecodeError("Envelope has no type")
    try:
        op = OpCode(frame["type"])
    except (ValueError, TypeError):
        raise DecodeError(f"Invalid opcode {frame['type']!r}")
    return Envelope(type=op, data=frame.get("data"))


def make_envelope(op: OpCode, data: Any = None) -> str:
    return encode(Envelope(type=op, data=data))
