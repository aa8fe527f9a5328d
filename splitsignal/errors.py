class SignalingError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DecodeError(SignalingError):
    """The frame is not a well-formed envelope with a known opcode."""


class ProtocolViolation(SignalingError):
    """The envelope is not legal for the sender's role or the current state."""


class UnknownPeer(SignalingError):
    def __init__(self, peer):
        super().__init__(f"Unknown peer {peer!r}")
        self.peer = peer


class TransportError(SignalingError):
    pass


class NegotiationFailure(SignalingError):
    pass


class MediaCaptureDeclined(NegotiationFailure):
    pass


class InvalidStateError(SignalingError):
    """Raised to the caller when an operation is invoked in the wrong state."""
