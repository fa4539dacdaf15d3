from typing import Optional


class HandshakeError(Exception):
    pass


class ProtocolError(HandshakeError, ValueError):
    """Raised when bytes on the wire do not match the message format."""


class TruncatedInput(ProtocolError):
    def __init__(self, message: str, expected: Optional[int] = None, received: Optional[int] = None):
        super().__init__(message)
        self.expected = expected
        self.received = received


class ChecksumMismatch(ProtocolError):
    pass


class MagicMismatch(ProtocolError):
    def __init__(self, expected: bytes, received: bytes, received_network: Optional[str] = None):
        known = f" ({received_network})" if received_network else ""
        super().__init__(f"Unexpected network magic {received.hex()}{known}, expected {expected.hex()}")
        self.expected = expected
        self.received = received
        self.received_network = received_network


class CommandMismatch(ProtocolError):
    def __init__(self, expected: str, received: str):
        super().__init__(f"Unexpected command {received!r} (expected {expected!r})")
        self.expected = expected
        self.received = received


class UnknownCommand(ProtocolError):
    pass


class UnsupportedProtocolVersion(ProtocolError):
    def __init__(self, version: int, minimum: int):
        super().__init__(f"Protocol version {version} is below the supported minimum {minimum}")
        self.version = version
        self.minimum = minimum


class CommandTooLong(ProtocolError):
    pass


class MalformedVarint(ProtocolError):
    pass


class PayloadTooLarge(ProtocolError):
    pass


class SelfConnection(ProtocolError):
    pass


class ConnectionFailed(HandshakeError):
    """
    Raised when the stream to the peer cannot be opened or written to.

    The underlying :exc:`OSError` is available as ``__cause__``.
    """


class Timeout(HandshakeError):
    pass
