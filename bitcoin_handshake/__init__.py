__version__ = '0.1.0'

from .bitcoin_protocol import Command, Envelope, NetworkId, checksum, create_message, parse_message, read_varint, write_varint
from .handshake import Handshake, HandshakeConfig, HandshakeResult, HandshakeSession, HandshakeState, perform_handshake
from .network_address import NetworkAddress, decode_address, encode_address
from .version_message import VersionPayload, decode_version, encode_version

__all__ = (
    'Command',
    'Envelope',
    'NetworkId',
    'checksum',
    'create_message',
    'parse_message',
    'read_varint',
    'write_varint',

    'NetworkAddress',
    'decode_address',
    'encode_address',

    'VersionPayload',
    'decode_version',
    'encode_version',

    'Handshake',
    'HandshakeConfig',
    'HandshakeResult',
    'HandshakeSession',
    'HandshakeState',
    'perform_handshake',
)
