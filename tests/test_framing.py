"""Tests for line framing and the ciphertext:digest envelope."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from greenlink import crypto
from greenlink.errors import ChecksumMismatch, CryptoError, MalformedEnvelope, TransportError
from greenlink.framing import (
    MAX_LINE_SIZE,
    open_envelope,
    read_line,
    seal,
    split_envelope,
    write_line,
)

KEY = bytes(range(16))


class TestEnvelope:
    """Tests for seal()/open_envelope()."""

    def test_seal_shape(self):
        """Envelope is ciphertext, one colon, then the checksum of the ciphertext."""
        line = seal("REQUEST_SENSOR_DATA 1", KEY)
        ciphertext, digest = split_envelope(line)
        assert line.count(":") == 1
        assert digest == crypto.checksum(ciphertext)

    def test_open_round_trip(self):
        """Opening a sealed envelope returns the plaintext."""
        assert open_envelope(seal("SEND_ACTUATOR_COMMAND 1 0", KEY), KEY) == "SEND_ACTUATOR_COMMAND 1 0"

    def test_tampered_digest(self):
        """A wrong digest is a checksum mismatch."""
        ciphertext, _ = split_envelope(seal("hello", KEY))
        with pytest.raises(ChecksumMismatch):
            open_envelope(f"{ciphertext}:{crypto.checksum('other')}", KEY)

    def test_tampered_ciphertext(self):
        """Changing the ciphertext breaks the checksum before decryption."""
        ciphertext, digest = split_envelope(seal("hello", KEY))
        flipped = ("B" if ciphertext[0] == "A" else "A") + ciphertext[1:]
        with pytest.raises(ChecksumMismatch):
            open_envelope(f"{flipped}:{digest}", KEY)

    @pytest.mark.parametrize("line", ["", "no-delimiter-here", ":digest", "ciphertext:"])
    def test_malformed(self, line):
        """Lines without both halves are malformed."""
        with pytest.raises(MalformedEnvelope):
            open_envelope(line, KEY)

    def test_valid_checksum_bad_ciphertext(self):
        """A correctly summed but undecryptable payload is a crypto error."""
        with pytest.raises(CryptoError):
            open_envelope(f"AAAA:{crypto.checksum('AAAA')}", KEY)


class TestReadLine:
    """Tests for read_line()."""

    @pytest.mark.asyncio
    async def test_reads_lines_in_order(self):
        """Each call returns one line without its terminator."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"first\r\nsecond\n")
        reader.feed_eof()
        assert await read_line(reader) == "first"
        assert await read_line(reader) == "second"

    @pytest.mark.asyncio
    async def test_eof_is_transport_error(self):
        """A closed stream surfaces as TransportError."""
        reader = asyncio.StreamReader()
        reader.feed_eof()
        with pytest.raises(TransportError):
            await read_line(reader)

    @pytest.mark.asyncio
    async def test_partial_line_at_eof(self):
        """EOF in the middle of a line is a transport error too."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"half a li")
        reader.feed_eof()
        with pytest.raises(TransportError):
            await read_line(reader)

    @pytest.mark.asyncio
    async def test_invalid_utf8_fails_checksum_not_stream(self):
        """Undecodable bytes are replaced; the line then fails as a bad envelope."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"\xff\xfeAAAA:deadbeef\nnext\n")
        reader.feed_eof()
        line = await read_line(reader)
        assert "\ufffd" in line
        with pytest.raises(ChecksumMismatch):
            open_envelope(line, KEY)
        assert await read_line(reader) == "next"

    @pytest.mark.asyncio
    async def test_oversized_line(self):
        """A line longer than the limit is refused."""
        reader = asyncio.StreamReader(limit=MAX_LINE_SIZE)
        reader.feed_data(b"x" * (MAX_LINE_SIZE + 10))
        reader.feed_eof()
        with pytest.raises(TransportError):
            await read_line(reader)


class TestWriteLine:
    """Tests for write_line()."""

    @pytest.mark.asyncio
    async def test_appends_newline(self):
        """The line is written UTF-8 encoded with one trailing newline."""
        writer = MagicMock()
        writer.drain = AsyncMock()
        await write_line(writer, "27.0 °C")
        writer.write.assert_called_once_with("27.0 °C\n".encode("utf-8"))
        writer.drain.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejects_embedded_newline(self):
        """Embedded newlines would break framing."""
        writer = MagicMock()
        writer.drain = AsyncMock()
        with pytest.raises(ValueError):
            await write_line(writer, "a\nb")
        writer.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_socket_error_is_transport_error(self):
        """A reset connection during drain becomes TransportError."""
        writer = MagicMock()
        writer.drain = AsyncMock(side_effect=ConnectionResetError("reset"))
        with pytest.raises(TransportError):
            await write_line(writer, "hello")
