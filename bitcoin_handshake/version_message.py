import random
import struct
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Protocol

from .bitcoin_protocol import (
    MIN_PROTOCOL_VERSION,
    NODE_NETWORK,
    PROTOCOL_VERSION,
    Command,
    NetworkId,
    create_message,
    read_exact,
    read_varint,
    write_varint,
)
from .errors import MalformedVarint, ProtocolError, TruncatedInput, UnsupportedProtocolVersion
from .network_address import NetworkAddress, decode_address, encode_address

MAX_USER_AGENT_LENGTH = 256

_PREFIX = struct.Struct('<iQq')
_NONCE = struct.Struct('<Q')
_SUFFIX = struct.Struct('<i?')


class NonceProvider(Protocol):
    def timestamp(self) -> int: ...

    def nonce(self) -> int: ...


class SystemNonceProvider:
    """Wall clock seconds and a fresh 64-bit random nonce on every call."""

    def timestamp(self) -> int:
        return int(time.time())

    def nonce(self) -> int:
        return random.getrandbits(64)


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ProtocolError(f"{name} out of range [{low}, {high}]: {value!r}")


@dataclass(frozen=True)
class VersionPayload:
    protocol_version: int
    services: int
    timestamp: int
    receiver_address: NetworkAddress
    sender_address: NetworkAddress
    nonce: int
    user_agent: str
    start_height: int
    relay: bool

    def __post_init__(self):
        _check_range('protocol_version', self.protocol_version, -2**31, 2**31 - 1)
        _check_range('services', self.services, 0, 2**64 - 1)
        _check_range('timestamp', self.timestamp, -2**63, 2**63 - 1)
        _check_range('nonce', self.nonce, 0, 2**64 - 1)
        _check_range('start_height', self.start_height, -2**31, 2**31 - 1)

    def to_wire(self) -> bytes:
        return encode_version(self)


def build_version_payload(
    receiver_address: NetworkAddress,
    sender_address: NetworkAddress,
    user_agent: str,
    start_height: int = 0,
    relay: bool = False,
    services: int = NODE_NETWORK,
    protocol_version: int = PROTOCOL_VERSION,
    provider: Optional[NonceProvider] = None
) -> VersionPayload:
    if provider is None:
        provider = SystemNonceProvider()

    return VersionPayload(
        protocol_version=protocol_version,
        services=services,
        timestamp=provider.timestamp(),
        receiver_address=receiver_address,
        sender_address=sender_address,
        nonce=provider.nonce(),
        user_agent=user_agent,
        start_height=start_height,
        relay=relay,
    )


def encode_version(payload: VersionPayload) -> bytes:
    user_agent = payload.user_agent.encode('utf-8')
    if len(user_agent) > MAX_USER_AGENT_LENGTH:
        raise ProtocolError(f"User agent is longer than {MAX_USER_AGENT_LENGTH} bytes")

    return b''.join([
        _PREFIX.pack(payload.protocol_version, payload.services, payload.timestamp),
        encode_address(payload.receiver_address),
        encode_address(payload.sender_address),
        _NONCE.pack(payload.nonce),
        write_varint(len(user_agent)),
        user_agent,
        _SUFFIX.pack(payload.start_height, payload.relay),
    ])


def decode_version(data: bytes, min_version: int = MIN_PROTOCOL_VERSION) -> VersionPayload:
    reader = BytesIO(data)

    protocol_version, services, timestamp = _PREFIX.unpack(read_exact(reader, _PREFIX.size, 'version header'))
    if protocol_version < min_version:
        raise UnsupportedProtocolVersion(protocol_version, min_version)

    receiver_address = decode_address(reader)
    sender_address = decode_address(reader)
    nonce = _NONCE.unpack(read_exact(reader, _NONCE.size, 'nonce'))[0]

    try:
        user_agent_length = read_varint(reader)
    except MalformedVarint as exc:
        if reader.tell() >= len(data):
            raise TruncatedInput("Insufficient data to read the user agent length") from exc
        raise
    if user_agent_length > MAX_USER_AGENT_LENGTH:
        raise ProtocolError(f"User agent length {user_agent_length} exceeds {MAX_USER_AGENT_LENGTH} bytes")
    user_agent = read_exact(reader, user_agent_length, 'user agent').decode('utf-8', errors='replace')

    start_height, relay = _SUFFIX.unpack(read_exact(reader, _SUFFIX.size, 'start height and relay flag'))

    return VersionPayload(
        protocol_version=protocol_version,
        services=services,
        timestamp=timestamp,
        receiver_address=receiver_address,
        sender_address=sender_address,
        nonce=nonce,
        user_agent=user_agent,
        start_height=start_height,
        relay=relay,
    )


def create_version_message(payload: VersionPayload, network: NetworkId = NetworkId.MAINNET) -> bytes:
    return create_message(Command.VERSION, payload.to_wire(), network)
