import struct
from dataclasses import dataclass
from io import BytesIO
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import BinaryIO, Union

from .bitcoin_protocol import NODE_NETWORK, read_exact

ADDRESS_SIZE = 26

IPV4_MAPPED_PREFIX = bytes(10) + b'\xff\xff'

IPAddress = Union[IPv4Address, IPv6Address]


@dataclass(frozen=True)
class NetworkAddress:
    ip: IPAddress
    port: int
    services: int = NODE_NETWORK

    def __post_init__(self):
        if not isinstance(self.ip, (IPv4Address, IPv6Address)):
            object.__setattr__(self, 'ip', ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"Port out of range: {self.port!r}")
        if self.services < 0 or self.services.bit_length() > 64:
            raise ValueError(f"Services bitmask out of range for 64 bits: {self.services!r}")

    @classmethod
    def from_address(cls, host: str, port: int, services: int = NODE_NETWORK) -> 'NetworkAddress':
        return cls(ip_address(host), port, services)

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def encode_address(address: NetworkAddress) -> bytes:
    if isinstance(address.ip, IPv4Address):
        ip_bytes = IPV4_MAPPED_PREFIX + address.ip.packed
    else:
        ip_bytes = address.ip.packed
    # port is the one big-endian field of the message
    return struct.pack('<Q', address.services) + ip_bytes + struct.pack('>H', address.port)


def decode_address(reader: Union[BinaryIO, bytes]) -> NetworkAddress:
    if isinstance(reader, (bytes, bytearray, memoryview)):
        reader = BytesIO(reader)
    data = read_exact(reader, ADDRESS_SIZE, 'network address')

    services = struct.unpack('<Q', data[0:8])[0]
    ip_bytes = data[8:24]
    port = struct.unpack('>H', data[24:26])[0]

    if ip_bytes[:12] == IPV4_MAPPED_PREFIX:
        ip = IPv4Address(ip_bytes[12:16])
    else:
        ip = IPv6Address(ip_bytes)

    return NetworkAddress(ip, port, services)
