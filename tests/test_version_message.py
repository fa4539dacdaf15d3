import struct

import pytest

from bitcoin_handshake.bitcoin_protocol import (
    HEADER_SIZE,
    NetworkId,
    checksum,
    parse_message,
    write_varint,
)
from bitcoin_handshake.errors import ProtocolError, TruncatedInput, UnsupportedProtocolVersion
from bitcoin_handshake.network_address import NetworkAddress, encode_address
from bitcoin_handshake.version_message import (
    MAX_USER_AGENT_LENGTH,
    SystemNonceProvider,
    VersionPayload,
    build_version_payload,
    create_version_message,
    decode_version,
    encode_version,
)

LOCAL = NetworkAddress.from_address('127.0.0.1', 18444)
REMOTE = NetworkAddress.from_address('192.0.2.10', 18444)


class FixedProvider:
    def __init__(self, timestamp: int = 1700000000, nonce: int = 0x1122334455667788):
        self._timestamp = timestamp
        self._nonce = nonce

    def timestamp(self) -> int:
        return self._timestamp

    def nonce(self) -> int:
        return self._nonce


def make_payload(**overrides) -> VersionPayload:
    fields = dict(
        protocol_version=70015,
        services=1,
        timestamp=1700000000,
        receiver_address=REMOTE,
        sender_address=LOCAL,
        nonce=0x1122334455667788,
        user_agent='/test/',
        start_height=0,
        relay=False,
    )
    fields.update(overrides)
    return VersionPayload(**fields)


class TestBuildVersionPayload:
    def test_uses_provider(self) -> None:
        payload = build_version_payload(REMOTE, LOCAL, '/test/', provider=FixedProvider())
        assert payload == make_payload()

    def test_options(self) -> None:
        payload = build_version_payload(
            REMOTE, LOCAL, '/test/',
            start_height=812345,
            relay=True,
            services=0x0409,
            protocol_version=70016,
            provider=FixedProvider(timestamp=1, nonce=2),
        )
        assert payload.start_height == 812345
        assert payload.relay is True
        assert payload.services == 0x0409
        assert payload.protocol_version == 70016
        assert (payload.timestamp, payload.nonce) == (1, 2)

    def test_system_provider(self) -> None:
        provider = SystemNonceProvider()
        assert provider.timestamp() > 1700000000
        assert 0 <= provider.nonce() < 2**64
        payload = build_version_payload(REMOTE, LOCAL, '/test/')
        assert 0 <= payload.nonce < 2**64


class TestEncodeVersion:
    def test_layout(self) -> None:
        payload = make_payload(start_height=1000, relay=True)
        encoded = encode_version(payload)

        assert len(encoded) == 86 + len('/test/')
        assert encoded[0:4] == struct.pack('<i', 70015)
        assert encoded[4:12] == struct.pack('<Q', 1)
        assert encoded[12:20] == struct.pack('<q', 1700000000)
        assert encoded[20:46] == encode_address(REMOTE)
        assert encoded[46:72] == encode_address(LOCAL)
        assert encoded[72:80] == struct.pack('<Q', 0x1122334455667788)
        assert encoded[80:81] == b'\x06'
        assert encoded[81:87] == b'/test/'
        assert encoded[87:91] == struct.pack('<i', 1000)
        assert encoded[91:92] == b'\x01'

    def test_to_wire(self) -> None:
        payload = make_payload()
        assert payload.to_wire() == encode_version(payload)

    @pytest.mark.parametrize(('field', 'value'), [
        ('protocol_version', 2**31),
        ('services', 2**64),
        ('services', -1),
        ('timestamp', 2**63),
        ('nonce', -1),
        ('nonce', 2**64),
        ('start_height', 2**31),
        ('start_height', -2**31 - 1),
    ])
    def test_out_of_range_fields(self, field: str, value: int) -> None:
        with pytest.raises(ProtocolError, match=f'{field} out of range'):
            make_payload(**{field: value})

    def test_range_limits_are_inclusive(self) -> None:
        payload = make_payload(services=2**64 - 1, nonce=2**64 - 1, start_height=2**31 - 1, protocol_version=-2**31)
        encoded = encode_version(payload)
        assert decode_version(encoded, min_version=-2**31) == payload

    def test_user_agent_too_long(self) -> None:
        with pytest.raises(ProtocolError, match='User agent is longer'):
            encode_version(make_payload(user_agent='x' * (MAX_USER_AGENT_LENGTH + 1)))

    def test_long_user_agent_uses_multibyte_length(self) -> None:
        encoded = encode_version(make_payload(user_agent='x' * 200))
        assert encoded[80:82] == write_varint(200) == b'\xc8\x01'
        assert decode_version(encoded).user_agent == 'x' * 200


class TestDecodeVersion:
    @pytest.mark.parametrize('payload', [
        make_payload(),
        make_payload(user_agent='', start_height=-1, relay=True),
        make_payload(
            receiver_address=NetworkAddress.from_address('::1', 8333, services=0),
            user_agent='/Satoshi:25.0.0/',
            protocol_version=70016,
        ),
    ])
    def test_round_trip(self, payload: VersionPayload) -> None:
        assert decode_version(encode_version(payload)) == payload

    def test_unsupported_version(self) -> None:
        encoded = encode_version(make_payload(protocol_version=60000))
        with pytest.raises(UnsupportedProtocolVersion) as exc_info:
            decode_version(encoded)
        assert exc_info.value.version == 60000
        assert exc_info.value.minimum == 70001

    def test_custom_minimum(self) -> None:
        encoded = encode_version(make_payload(protocol_version=60000))
        assert decode_version(encoded, min_version=60000).protocol_version == 60000

    def test_every_truncation_is_reported(self) -> None:
        encoded = encode_version(make_payload())
        for size in range(len(encoded)):
            with pytest.raises(TruncatedInput):
                decode_version(encoded[:size])

    def test_user_agent_length_limit(self) -> None:
        encoded = encode_version(make_payload(user_agent=''))
        tampered = encoded[:80] + write_varint(MAX_USER_AGENT_LENGTH + 1) + encoded[81:]
        with pytest.raises(ProtocolError, match='exceeds'):
            decode_version(tampered)

    def test_invalid_utf8_user_agent(self) -> None:
        encoded = encode_version(make_payload(user_agent='ab'))
        tampered = encoded[:81] + b'\xff\xfe' + encoded[83:]
        assert decode_version(tampered).user_agent == '\ufffd\ufffd'


class TestCreateVersionMessage:
    def test_regtest_envelope(self) -> None:
        payload = make_payload()
        message = create_version_message(payload, NetworkId.REGTEST)
        encoded = encode_version(payload)

        assert message[0:4] == b'\xfa\xbf\xb5\xda'
        assert message[4:16] == b'version\x00\x00\x00\x00\x00'
        assert struct.unpack('<I', message[16:20])[0] == len(encoded)
        assert message[20:24] == checksum(encoded)
        assert message[HEADER_SIZE:] == encoded

        envelope = parse_message(message)
        assert decode_version(envelope.payload) == payload
