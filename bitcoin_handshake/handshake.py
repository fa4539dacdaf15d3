import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from .bitcoin_protocol import (
    MIN_PROTOCOL_VERSION,
    NODE_NETWORK,
    PROTOCOL_VERSION,
    Command,
    Envelope,
    NetworkId,
    create_verack_message,
    read_message,
)
from .errors import (
    CommandMismatch,
    ConnectionFailed,
    HandshakeError,
    MagicMismatch,
    ProtocolError,
    SelfConnection,
    Timeout,
)
from .network_address import NetworkAddress
from .version_message import NonceProvider, VersionPayload, build_version_payload, create_version_message, decode_version

logger = logging.getLogger(__name__)

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class HandshakeState(Enum):
    INIT = 'init'
    VERSION_SENT = 'version_sent'
    AWAITING_REPLY = 'awaiting_reply'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass(frozen=True)
class HandshakeSession:
    network: NetworkId
    local_address: NetworkAddress
    remote_address: NetworkAddress
    user_agent: str
    start_height: int = 0


@dataclass
class HandshakeConfig:
    timeout: Optional[float] = 10.0
    send_verack: bool = True
    await_verack: bool = False
    expected_command: Command = Command.VERSION
    relay: bool = False
    services: int = NODE_NETWORK
    protocol_version: int = PROTOCOL_VERSION
    min_protocol_version: int = MIN_PROTOCOL_VERSION


@dataclass
class HandshakeResult:
    state: HandshakeState
    local_version: Optional[VersionPayload] = None
    peer_version: Optional[VersionPayload] = None
    error: Optional[HandshakeError] = None

    @property
    def ok(self) -> bool:
        return self.state is HandshakeState.COMPLETED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class Handshake:
    """
    One version/verack exchange with one peer.

    The stream is opened by ``run()`` and closed before it returns, whatever
    the outcome. Failures to connect, read or write raise
    :exc:`ConnectionFailed`; a reply that is late or malformed is logged and
    reported through the returned :class:`HandshakeResult`.
    """

    def __init__(
        self,
        session: HandshakeSession,
        config: Optional[HandshakeConfig] = None,
        provider: Optional[NonceProvider] = None,
        open_connection: Connector = asyncio.open_connection
    ):
        self.session = session
        self.config = config or HandshakeConfig()
        self.provider = provider
        self.state = HandshakeState.INIT
        self.local_version: Optional[VersionPayload] = None
        self.peer_version: Optional[VersionPayload] = None
        self._open_connection = open_connection
        self._started = False

    @property
    def remote(self) -> NetworkAddress:
        return self.session.remote_address

    async def run(self) -> HandshakeResult:
        if self._started:
            raise RuntimeError("A handshake session can only be run once")
        self._started = True

        reader, writer = await self._connect()
        try:
            await self._send_version(writer)
            result = await self._receive_reply(reader, writer)
        except BaseException:
            self.state = HandshakeState.FAILED
            raise
        finally:
            await self._close(writer)

        if result.ok:
            peer = result.peer_version
            if peer is not None:
                logger.info(f"Handshake with {self.remote} completed - Version: {peer.protocol_version}, User agent: {peer.user_agent}, Height: {peer.start_height}")
            else:
                logger.info(f"Handshake with {self.remote} completed")
        return result

    async def _connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                self._open_connection(str(self.remote.ip), self.remote.port),
                timeout=self.config.timeout
            )
        except (asyncio.TimeoutError, OSError) as e:
            self.state = HandshakeState.FAILED
            logger.warning(f"Could not connect to {self.remote}: {e!r}")
            raise ConnectionFailed(f"Could not connect to {self.remote}") from e

    async def _send(self, writer: asyncio.StreamWriter, message: bytes, command: Command) -> None:
        try:
            writer.write(message)
            await writer.drain()
        except OSError as e:
            logger.warning(f"Could not send {command.value} to {self.remote}: {e!r}")
            raise ConnectionFailed(f"Could not send {command.value} to {self.remote}") from e
        logger.debug(f"Sent {command.value} ({len(message)} bytes) to {self.remote}")

    async def _send_version(self, writer: asyncio.StreamWriter) -> None:
        self.local_version = build_version_payload(
            receiver_address=self.session.remote_address,
            sender_address=self.session.local_address,
            user_agent=self.session.user_agent,
            start_height=self.session.start_height,
            relay=self.config.relay,
            services=self.config.services,
            protocol_version=self.config.protocol_version,
            provider=self.provider,
        )
        message = create_version_message(self.local_version, self.session.network)
        await self._send(writer, message, Command.VERSION)
        self.state = HandshakeState.VERSION_SENT

    async def _receive_reply(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> HandshakeResult:
        self.state = HandshakeState.AWAITING_REPLY
        try:
            envelope = await self._read_envelope(reader)
            self.peer_version = self._validate_reply(envelope)

            if self.config.send_verack:
                await self._send(writer, create_verack_message(self.session.network), Command.VERACK)

            if self.config.await_verack:
                self._validate_verack(await self._read_envelope(reader))
        except ConnectionFailed:
            raise
        except HandshakeError as e:
            self.state = HandshakeState.FAILED
            logger.warning(f"Handshake with {self.remote} failed: {e}")
            return HandshakeResult(self.state, self.local_version, self.peer_version, e)

        self.state = HandshakeState.COMPLETED
        return HandshakeResult(self.state, self.local_version, self.peer_version)

    async def _read_envelope(self, reader: asyncio.StreamReader) -> Envelope:
        try:
            envelope = await asyncio.wait_for(read_message(reader), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise Timeout(f"No reply from {self.remote} within {self.config.timeout} seconds") from e
        except OSError as e:
            logger.warning(f"Could not read from {self.remote}: {e!r}")
            raise ConnectionFailed(f"Could not read from {self.remote}") from e
        logger.debug(f"Received {envelope.command!r} ({envelope.length} payload bytes) from {self.remote}")
        return envelope

    def _check_network(self, envelope: Envelope) -> None:
        expected = self.session.network.magic
        if envelope.magic != expected:
            try:
                received_network = NetworkId.from_magic(envelope.magic).name.lower()
            except ValueError:
                received_network = None
            raise MagicMismatch(expected, envelope.magic, received_network)

    def _validate_reply(self, envelope: Envelope) -> Optional[VersionPayload]:
        self._check_network(envelope)

        expected = self.config.expected_command
        command = envelope.command_name
        if command != expected.value:
            raise CommandMismatch(expected.value, command)

        if expected is not Command.VERSION:
            return None

        peer_version = decode_version(envelope.payload, self.config.min_protocol_version)
        if self.local_version is not None and peer_version.nonce == self.local_version.nonce:
            raise SelfConnection(f"Peer {self.remote} replied with our own nonce")
        return peer_version

    def _validate_verack(self, envelope: Envelope) -> None:
        self._check_network(envelope)
        command = envelope.command_name
        if command != Command.VERACK.value:
            raise CommandMismatch(Command.VERACK.value, command)
        if envelope.payload:
            raise ProtocolError(f"The verack from {self.remote} has a {envelope.length} byte payload")

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing connection to {self.remote}: {e!r}")


async def perform_handshake(
    network: NetworkId,
    local_address: NetworkAddress,
    remote_address: NetworkAddress,
    user_agent: str,
    start_height: int = 0,
    config: Optional[HandshakeConfig] = None
) -> HandshakeResult:
    session = HandshakeSession(network, local_address, remote_address, user_agent, start_height)
    return await Handshake(session, config).run()
