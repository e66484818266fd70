"""Newline text framing and the `<ciphertext>:<sha256 hex>` envelope. Stream failures surface as TransportError."""

import asyncio
from typing import Tuple

from . import crypto
from .errors import ChecksumMismatch, MalformedEnvelope, TransportError

MAX_LINE_SIZE = 64 * 1024  # 64 KiB hard limit
ENVELOPE_DELIMITER = ":"


async def read_line(reader: asyncio.StreamReader) -> str:
    """
    Read one line and return it without the trailing newline.

    Raises:
        TransportError: if the peer closed the stream or the read failed.
    """
    try:
        raw = await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as exc:
        # EOF before a full line; an empty partial just means a clean close.
        if exc.partial:
            raise TransportError("Stream closed mid-line") from exc
        raise TransportError("Stream closed by peer") from exc
    except asyncio.LimitOverrunError as exc:
        raise TransportError("Line exceeds stream buffer limit") from exc
    except OSError as exc:
        raise TransportError(f"Read failed: {exc}") from exc

    if len(raw) > MAX_LINE_SIZE:
        raise TransportError(f"Line too large: {len(raw)} > {MAX_LINE_SIZE}")
    # Undecodable bytes become U+FFFD; such a line then fails its checksum.
    return raw[:-1].decode("utf-8", errors="replace").rstrip("\r")


async def write_line(writer: asyncio.StreamWriter, line: str) -> None:
    """Write one line and let the transport flush."""
    if "\n" in line:
        raise ValueError("Line must not contain a newline")
    data = line.encode("utf-8") + b"\n"
    if len(data) > MAX_LINE_SIZE:
        raise ValueError("Line exceeds maximum size")
    try:
        writer.write(data)
        await writer.drain()  # important under backpressure
    except OSError as exc:
        raise TransportError(f"Write failed: {exc}") from exc


# -------------------------
# Envelope helpers
# -------------------------

def seal(plaintext: str, key: bytes) -> str:
    """Encrypt plaintext and append the checksum of the ciphertext."""
    ciphertext = crypto.encrypt(plaintext, key)
    return f"{ciphertext}{ENVELOPE_DELIMITER}{crypto.checksum(ciphertext)}"


def split_envelope(line: str) -> Tuple[str, str]:
    """Split on the last ':' into (ciphertext, digest)."""
    ciphertext, sep, digest = line.rpartition(ENVELOPE_DELIMITER)
    if not sep or not ciphertext or not digest:
        raise MalformedEnvelope("Expected '<ciphertext>:<digest>'")
    return ciphertext, digest


def open_envelope(line: str, key: bytes) -> str:
    """
    Validate and decrypt one envelope line.

    Order matters: checksum first, so a tampered line is rejected before it
    ever reaches the cipher.

    Raises:
        MalformedEnvelope, ChecksumMismatch, CryptoError.
    """
    ciphertext, digest = split_envelope(line)
    if not crypto.validate(ciphertext, digest):
        raise ChecksumMismatch("Envelope checksum does not match ciphertext")
    return crypto.decrypt(ciphertext, key)


async def write_envelope(writer: asyncio.StreamWriter, plaintext: str, key: bytes) -> None:
    """seal() + write_line() in one go."""
    await write_line(writer, seal(plaintext, key))


async def read_envelope(reader: asyncio.StreamReader, key: bytes) -> str:
    """read_line() + open_envelope() in one go."""
    return open_envelope(await read_line(reader), key)
