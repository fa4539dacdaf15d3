#!/usr/bin/env python3

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from . import __version__
from .bitcoin_protocol import NetworkId
from .errors import HandshakeError
from .handshake import Handshake, HandshakeConfig, HandshakeSession
from .network_address import NetworkAddress

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_USER_AGENT = f"/bitcoin-handshake:{__version__}/"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Bitcoin P2P version/verack handshake probe',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  bitcoin-handshake --network regtest
  bitcoin-handshake --network mainnet --host 203.0.113.7 --timeout 5
  bitcoin-handshake --host ::1 --port 18444 --await-verack
        """
    )

    parser.add_argument(
        '--network',
        choices=[network.name.lower() for network in NetworkId],
        default='regtest',
        help='Network whose magic tags the messages (default: regtest)'
    )

    parser.add_argument(
        '--host',
        type=str,
        default='127.0.0.1',
        help='IP address of the remote node (default: 127.0.0.1)'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='Port of the remote node (default: the network default port)'
    )

    parser.add_argument(
        '--local-host',
        type=str,
        default='127.0.0.1',
        help='IP address advertised as ours in the version message (default: 127.0.0.1)'
    )

    parser.add_argument(
        '--local-port',
        type=int,
        default=None,
        help='Port advertised as ours in the version message (default: the network default port)'
    )

    parser.add_argument(
        '--user-agent',
        type=str,
        default=DEFAULT_USER_AGENT,
        help=f'User agent sent to the peer (default: {DEFAULT_USER_AGENT})'
    )

    parser.add_argument(
        '--start-height',
        type=int,
        default=0,
        help='Block height advertised to the peer (default: 0)'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        default=10.0,
        help='Connect and read timeout in seconds, 0 to wait forever (default: 10.0)'
    )

    parser.add_argument(
        '--no-verack',
        action='store_true',
        help='Do not acknowledge the peer version with a verack'
    )

    parser.add_argument(
        '--await-verack',
        action='store_true',
        help="Wait for and validate the peer's verack"
    )

    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level (default: INFO)'
    )

    return parser.parse_args(argv)


def build_handshake(args: argparse.Namespace) -> Handshake:
    network = NetworkId[args.network.upper()]
    port = args.port if args.port is not None else network.default_port
    local_port = args.local_port if args.local_port is not None else network.default_port

    session = HandshakeSession(
        network=network,
        local_address=NetworkAddress.from_address(args.local_host, local_port),
        remote_address=NetworkAddress.from_address(args.host, port),
        user_agent=args.user_agent,
        start_height=args.start_height,
    )
    config = HandshakeConfig(
        timeout=args.timeout or None,
        send_verack=not args.no_verack,
        await_verack=args.await_verack,
    )
    return Handshake(session, config)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        handshake = build_handshake(args)
    except ValueError as e:
        logger.error(f"Invalid address: {e}")
        return 1

    logger.info(f"Starting {handshake.session.network.name.lower()} handshake with {handshake.remote}")

    try:
        result = await handshake.run()
    except HandshakeError as e:
        logger.error(f"Handshake failed: {e}")
        return 1

    if not result.ok:
        logger.error(f"Handshake failed: {result.error}")
        return 1

    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
