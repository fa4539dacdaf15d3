import asyncio
import hashlib
import struct
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import BinaryIO, Tuple, Union

from .errors import (
    ChecksumMismatch,
    CommandTooLong,
    MalformedVarint,
    PayloadTooLarge,
    ProtocolError,
    TruncatedInput,
    UnknownCommand,
)

PROTOCOL_VERSION = 70015
MIN_PROTOCOL_VERSION = 70001

NODE_NETWORK = 1

MAGIC_SIZE = 4
COMMAND_SIZE = 12
CHECKSUM_SIZE = 4
HEADER_SIZE = 24
MAX_PAYLOAD_LENGTH = 32 * 1024 * 1024

_HEADER = struct.Struct('<4s12sI4s')


class NetworkId(Enum):
    MAINNET = (b'\xf9\xbe\xb4\xd9', 8333)
    TESTNET = (b'\x0b\x11\x09\x07', 18333)
    REGTEST = (b'\xfa\xbf\xb5\xda', 18444)

    def __init__(self, magic: bytes, default_port: int):
        self.magic = magic
        self.default_port = default_port

    @classmethod
    def from_magic(cls, magic: bytes) -> 'NetworkId':
        for network in cls:
            if network.magic == magic:
                return network
        raise ValueError(f"Unknown network magic {bytes(magic).hex()}")


class Command(Enum):
    VERSION = 'version'
    VERACK = 'verack'

    def to_wire(self) -> bytes:
        return pad_command(self.value)

    @classmethod
    def from_wire(cls, data: bytes) -> 'Command':
        name = parse_command(data)
        try:
            return cls(name)
        except ValueError as exc:
            raise UnknownCommand(f"Unsupported command {name!r}") from exc


def pad_command(name: str) -> bytes:
    try:
        encoded = name.encode('ascii')
    except UnicodeEncodeError as exc:
        raise ProtocolError(f"Command name must be ASCII: {name!r}") from exc
    if len(encoded) > COMMAND_SIZE:
        raise CommandTooLong(f"Command name {name!r} is longer than {COMMAND_SIZE} bytes")
    return encoded.ljust(COMMAND_SIZE, b'\x00')


def parse_command(data: bytes) -> str:
    if len(data) != COMMAND_SIZE:
        raise TruncatedInput(f"Command field must be {COMMAND_SIZE} bytes", COMMAND_SIZE, len(data))
    name, _, padding = bytes(data).partition(b'\x00')
    if padding.strip(b'\x00'):
        raise UnknownCommand(f"Command field {bytes(data)!r} has data after its padding")
    try:
        return name.decode('ascii')
    except UnicodeDecodeError as exc:
        raise UnknownCommand(f"Command field {bytes(data)!r} is not ASCII") from exc


def checksum(payload: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:CHECKSUM_SIZE]


def read_exact(buffer: BinaryIO, size: int, what: str) -> bytes:
    data = buffer.read(size)
    if len(data) < size:
        raise TruncatedInput(f"Insufficient data to read {what}: got {len(data)} of {size} bytes", size, len(data))
    return data


def write_varint(value: int) -> bytes:
    if value < 0 or value.bit_length() > 64:
        raise MalformedVarint(f"Value out of range for a 64-bit varint: {value!r}")
    encoded = bytearray()
    while value > 0x7F:
        encoded.append((value & 0x7F) | 0x80)
        value >>= 7
    encoded.append(value)
    return bytes(encoded)


def read_varint(stream: Union[BinaryIO, bytes]) -> int:
    if isinstance(stream, (bytes, bytearray, memoryview)):
        stream = BytesIO(stream)
    value = 0
    shift = 0
    while True:
        if shift > 63:
            raise MalformedVarint("Varint overflows 64 bits")
        byte = stream.read(1)
        if not byte:
            raise MalformedVarint("Varint ended mid-sequence")
        value |= (byte[0] & 0x7F) << shift
        if value.bit_length() > 64:
            raise MalformedVarint("Varint overflows 64 bits")
        if not byte[0] & 0x80:
            return value
        shift += 7


@dataclass(frozen=True)
class Envelope:
    magic: bytes
    command: bytes
    length: int
    checksum: bytes
    payload: bytes

    def __post_init__(self):
        if len(self.magic) != MAGIC_SIZE:
            raise ProtocolError(f"Network magic must be {MAGIC_SIZE} bytes, got {len(self.magic)}")
        if len(self.command) != COMMAND_SIZE:
            raise ProtocolError(f"Command field must be {COMMAND_SIZE} bytes, got {len(self.command)}")
        if self.length != len(self.payload):
            raise ProtocolError(f"Declared length {self.length} does not match the {len(self.payload)} byte payload")
        if self.length > MAX_PAYLOAD_LENGTH:
            raise PayloadTooLarge(f"Payload length {self.length} exceeds {MAX_PAYLOAD_LENGTH} bytes")
        calculated_checksum = checksum(self.payload)
        if calculated_checksum != self.checksum:
            raise ChecksumMismatch(f"Payload checksum {calculated_checksum.hex()} does not match {bytes(self.checksum).hex()}")

    @property
    def command_name(self) -> str:
        return parse_command(self.command)

    def to_wire(self) -> bytes:
        return _HEADER.pack(self.magic, self.command, self.length, self.checksum) + self.payload


def create_message(command: Union[Command, str], payload: bytes, network: NetworkId = NetworkId.MAINNET) -> bytes:
    command_padded = command.to_wire() if isinstance(command, Command) else pad_command(command)
    payload = bytes(payload)
    return Envelope(network.magic, command_padded, len(payload), checksum(payload), payload).to_wire()


def create_verack_message(network: NetworkId = NetworkId.MAINNET) -> bytes:
    return create_message(Command.VERACK, b'', network)


def parse_header(data: bytes) -> Tuple[bytes, bytes, int, bytes]:
    if len(data) < HEADER_SIZE:
        raise TruncatedInput(f"Insufficient data for message header: got {len(data)} of {HEADER_SIZE} bytes", HEADER_SIZE, len(data))
    magic, command, length, stored_checksum = _HEADER.unpack_from(data)
    if length > MAX_PAYLOAD_LENGTH:
        raise PayloadTooLarge(f"Declared payload length {length} exceeds {MAX_PAYLOAD_LENGTH} bytes")
    return magic, command, length, stored_checksum


def parse_message(data: bytes) -> Envelope:
    magic, command, length, stored_checksum = parse_header(data)
    payload = bytes(data[HEADER_SIZE:HEADER_SIZE + length])
    if len(payload) < length:
        raise TruncatedInput(f"Insufficient data for message payload: got {len(payload)} of {length} bytes", length, len(payload))

    # the envelope rejects a payload whose checksum differs from the stored one
    return Envelope(magic, command, length, stored_checksum, payload)


async def read_message(reader: asyncio.StreamReader) -> Envelope:
    try:
        header_data = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError as exc:
        raise TruncatedInput(f"Stream closed after {len(exc.partial)} of {HEADER_SIZE} header bytes", HEADER_SIZE, len(exc.partial)) from exc

    _, _, length, _ = parse_header(header_data)
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise TruncatedInput(f"Stream closed after {len(exc.partial)} of {length} payload bytes", length, len(exc.partial)) from exc

    return parse_message(header_data + payload)
