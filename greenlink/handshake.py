"""
handshake.py — Diffie-Hellman key exchange, the first thing on every connection.

Flow (same on both ends, so there is no client/server asymmetry):
1) Generate an ephemeral DH key pair in the shared 2048-bit group.
2) Write our public key as one Base64url line.
3) Read the peer's public key line.
4) Agree, keep the leading 16 bytes as the AES-128 session key.

Both sides write before they read; the write only lands in the transport
buffer, so nobody blocks waiting for the other to speak first.

No retry here. A failed handshake kills the connection; reconnecting is the
channel's decision, one layer up.
"""

import asyncio
import logging

from cryptography.exceptions import UnsupportedAlgorithm

from . import crypto
from .errors import HandshakeError, TransportError
from .framing import read_line, write_line

_LOGGER = logging.getLogger(__name__)


async def perform_handshake(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> bytes:
    """
    Exchange public keys over the open stream and return the session key.

    Raises:
        HandshakeError: key generation, exchange I/O, key parsing or the
            agreement itself failed.
    """
    # 1) Our ephemeral key pair.
    try:
        priv, pub = crypto.generate_dh_keypair()
        our_line = crypto.export_pubkey_b64url(pub)
    except (UnsupportedAlgorithm, ValueError) as exc:
        raise HandshakeError(f"Could not generate DH key pair: {exc}") from exc

    # 2) + 3) Send ours, then read theirs.
    try:
        await write_line(writer, our_line)
        peer_line = await read_line(reader)
    except TransportError as exc:
        raise HandshakeError(f"Public key exchange failed: {exc}") from exc

    # 4) Parse + agree. Anything odd about the peer key ends up here.
    try:
        peer_pub = crypto.import_pubkey_b64url(peer_line)
        key = crypto.derive_session_key(priv, peer_pub)
    except (UnsupportedAlgorithm, ValueError, TypeError) as exc:
        raise HandshakeError(f"Invalid peer public key: {exc}") from exc

    _LOGGER.debug("Handshake complete with %s", writer.get_extra_info("peername"))
    return key
