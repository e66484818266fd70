"""
node.py — greenhouse server + control-panel client roles.

What lives here:
- Session: one per accepted connection. Handshake, then a receive loop of
  envelope -> checksum -> decrypt -> parse -> dispatch -> encrypt -> reply.
- GreenhouseServer: asyncio accept loop; every connection gets its own task.
- ChannelClient: the control panel's end. Bounded reconnect, a heartbeat task
  that polls every node, and one-request-at-a-time access to the socket.

Notes:
- Per-message problems (bad checksum, bad ciphertext, bad command) never end a
  session. Only transport loss, a failed handshake, the SHUTDOWN sentinel or
  too many unreadable envelopes in a row do.
- Cancelling is done by closing the writer or cancelling the task; both wake
  a blocked read immediately.
"""

import asyncio
import contextlib
import enum
import logging
from typing import Iterable, Optional, Sequence, Set

from . import config
from .dispatcher import Dispatcher, error_response
from .errors import (
    ChecksumMismatch,
    CipherUnavailableError,
    CryptoError,
    HandshakeError,
    MalformedEnvelope,
    MessageFormatError,
    TransportError,
)
from .framing import open_envelope, read_envelope, read_line, write_envelope
from .greenhouse import NodeRegistry
from .handshake import perform_handshake
from .messages import SHUTDOWN, RequestSensorData, parse_command, serialize_command

_LOGGER = logging.getLogger(__name__)

MAX_ENVELOPE_FAILURES = 10  # consecutive unreadable lines before we give up on a peer


class SessionState(enum.Enum):
    ACCEPTED = "accepted"
    HANDSHAKING = "handshaking"
    SERVING = "serving"
    CLOSED = "closed"


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream writer; a peer that already vanished is fine."""
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        _LOGGER.debug("Ignoring error while closing stream: %s", exc)


class Session:
    """
    Server side of one connection.

    ACCEPTED -> HANDSHAKING -> SERVING -> CLOSED, with HANDSHAKING -> CLOSED
    when the key exchange fails. The streams are released on every exit path.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        dispatcher: Dispatcher,
        max_envelope_failures: int = MAX_ENVELOPE_FAILURES,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.dispatcher = dispatcher
        self.max_envelope_failures = max_envelope_failures
        self.state = SessionState.ACCEPTED
        self.key: Optional[bytes] = None
        self.peer = str(writer.get_extra_info("peername"))
        self._envelope_failures = 0

    @property
    def running(self) -> bool:
        return self.state is not SessionState.CLOSED

    async def run(self) -> None:
        """Drive the session until the peer leaves or something fatal happens."""
        _LOGGER.info("[%s] Session started", self.peer)
        try:
            self.state = SessionState.HANDSHAKING
            try:
                self.key = await perform_handshake(self.reader, self.writer)
            except HandshakeError as exc:
                _LOGGER.warning("[%s] Handshake failed: %s", self.peer, exc)
                return

            self.state = SessionState.SERVING
            _LOGGER.info("[%s] Handshake complete, serving commands", self.peer)
            await self._serve()
        except TransportError as exc:
            _LOGGER.info("[%s] Connection lost: %s", self.peer, exc)
        except CipherUnavailableError as exc:
            _LOGGER.error("[%s] Cipher unavailable, closing session: %s", self.peer, exc)
        finally:
            await self.close()

    async def _serve(self) -> None:
        while True:
            line = await read_line(self.reader)  # TransportError ends the session

            try:
                plaintext = open_envelope(line, self.key)
            except (MalformedEnvelope, ChecksumMismatch) as exc:
                # Corrupted or tampered: drop it, no reply, keep the link.
                self._envelope_failures += 1
                _LOGGER.warning(
                    "[%s] Dropping message (%d in a row): %s",
                    self.peer, self._envelope_failures, exc,
                )
                if self._envelope_failures >= self.max_envelope_failures:
                    _LOGGER.error(
                        "[%s] No valid envelope in %d messages, closing session",
                        self.peer, self._envelope_failures,
                    )
                    return
                continue
            except CipherUnavailableError:
                raise
            except CryptoError as exc:
                self._envelope_failures = 0
                _LOGGER.warning("[%s] Could not decrypt message: %s", self.peer, exc)
                response = error_response("could not decrypt message")
            else:
                self._envelope_failures = 0
                if plaintext.strip() == SHUTDOWN:
                    _LOGGER.info("[%s] Peer sent SHUTDOWN", self.peer)
                    return
                response = await self.respond(plaintext)

            await write_envelope(self.writer, response, self.key)

    async def respond(self, plaintext: str) -> str:
        """Parse and execute one plaintext command; format errors become replies."""
        try:
            command = parse_command(plaintext)
        except MessageFormatError as exc:
            _LOGGER.info("[%s] Bad command %r: %s", self.peer, plaintext, exc)
            return error_response(str(exc))
        _LOGGER.debug("[%s] Executing %s", self.peer, command)
        return await self.dispatcher.execute(command)

    async def close(self) -> None:
        """Release the streams. Safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await _close_writer(self.writer)
        _LOGGER.info("[%s] Session closed", self.peer)


class GreenhouseServer:
    """
    Listens for control panels and runs one Session task per connection.

    The registry is the only state shared between sessions; its per-node
    locks keep concurrent actuator toggles from interleaving.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        host: str = config.DEFAULT_HOST,
        port: int = config.DEFAULT_PORT,
        allowed_node_ids: Optional[Iterable[int]] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.registry = registry
        self.dispatcher = Dispatcher(registry, allowed_node_ids=allowed_node_ids)
        self.sessions: Set[Session] = set()
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind the listening socket. Port 0 picks a free port (see bound_port)."""
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        _LOGGER.info("Greenhouse listening on %s", addrs)

    @property
    def bound_port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Server is not started")
        return self._server.sockets[0].getsockname()[1]

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = Session(reader, writer, self.dispatcher)
        self.sessions.add(session)
        try:
            await session.run()
        finally:
            self.sessions.discard(session)

    async def stop(self) -> None:
        """Stop accepting and close every live session."""
        if self._server is not None:
            self._server.close()
        for session in list(self.sessions):
            await session.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        _LOGGER.info("Greenhouse server stopped")


def _log_abandoned_exchange(task: asyncio.Task) -> None:
    """Done callback for an exchange whose caller was cancelled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _LOGGER.debug("Abandoned request failed: %s", exc)
    else:
        _LOGGER.debug("Discarded response to abandoned request: %s", task.result())


class ChannelClient:
    """
    Control-panel end of the command channel.

    Args:
        host, port:          where the greenhouse listens.
        node_ids:            nodes the heartbeat polls.
        max_attempts:        connection + handshake tries per open().
        retry_delay:         seconds to wait between tries.
        heartbeat_interval:  seconds between heartbeat cycles.
    """

    def __init__(
        self,
        host: str = config.DEFAULT_HOST,
        port: int = config.DEFAULT_PORT,
        node_ids: Sequence[int] = config.DEFAULT_NODE_IDS,
        max_attempts: int = config.DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = config.DEFAULT_RETRY_DELAY,
        heartbeat_interval: float = config.DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.host = host
        self.port = port
        self.node_ids = tuple(node_ids)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.heartbeat_interval = heartbeat_interval
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._key: Optional[bytes] = None
        self._lock = asyncio.Lock()  # one request/response on the wire at a time
        self._heartbeat: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: config.Settings) -> "ChannelClient":
        return cls(
            host=settings.host,
            port=settings.port,
            node_ids=settings.node_ids,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            heartbeat_interval=settings.heartbeat_interval,
        )

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.done()

    # -------------------------
    # Connection lifecycle
    # -------------------------

    async def open(self) -> bool:
        """
        Connect and handshake, trying up to max_attempts times.

        Returns True once a session key is in place, False when every attempt
        failed. It does not retry beyond that; the caller decides what next.
        """
        async with self._lock:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    reader, writer = await asyncio.open_connection(self.host, self.port)
                except OSError as exc:
                    _LOGGER.warning(
                        "Connection attempt %d/%d failed: %s", attempt, self.max_attempts, exc
                    )
                else:
                    try:
                        key = await perform_handshake(reader, writer)
                    except HandshakeError as exc:
                        _LOGGER.warning(
                            "Handshake attempt %d/%d failed: %s", attempt, self.max_attempts, exc
                        )
                        await _close_writer(writer)
                    else:
                        old = self._discard_connection()
                        if old is not None:
                            await _close_writer(old)
                        self._reader, self._writer, self._key = reader, writer, key
                        _LOGGER.info("Connection established with %s:%s", self.host, self.port)
                        return True

                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)

            _LOGGER.error("Failed to establish connection after %d attempts", self.max_attempts)
            return False

    def _discard_connection(self) -> Optional[asyncio.StreamWriter]:
        """Forget the current connection, closing its writer. Returns the old writer."""
        writer = self._writer
        self._reader, self._writer, self._key = None, None, None
        if writer is not None:
            writer.close()
        return writer

    async def close(self) -> None:
        """Stop the heartbeat, tell the greenhouse we're leaving, drop the socket."""
        await self.stop_heartbeat()
        async with self._lock:
            if self._writer is not None and self._key is not None:
                try:
                    await write_envelope(self._writer, SHUTDOWN, self._key)
                except TransportError as exc:
                    _LOGGER.debug("Could not send SHUTDOWN: %s", exc)
            writer = self._discard_connection()
        if writer is not None:
            await _close_writer(writer)
        _LOGGER.info("Channel closed")

    # -------------------------
    # Commands
    # -------------------------

    async def send_command(self, text: str) -> None:
        """Encrypt + checksum one command line and write it. Caller holds the lock."""
        if self._writer is None or self._key is None:
            raise TransportError("Channel is not open")
        await write_envelope(self._writer, text, self._key)
        _LOGGER.debug("Sent command: %s", text)

    async def receive_response(self) -> str:
        """Read and open one response envelope. Caller holds the lock."""
        if self._reader is None or self._key is None:
            raise TransportError("Channel is not open")
        return await read_envelope(self._reader, self._key)

    async def request(self, text: str) -> str:
        """
        Send one command and wait for its response, as a single exchange.

        Cancelling the caller does not cut the exchange short: it keeps the
        lock until its response has been read and thrown away, so the link
        stays usable and the next request never sees a stale reply.

        Raises:
            TransportError: the connection is gone (it has been dropped).
            ChecksumMismatch, MalformedEnvelope, CryptoError: this one
                response was unreadable; the connection is still usable.
        """
        exchange = asyncio.ensure_future(self._exchange(text))
        try:
            return await asyncio.shield(exchange)
        except asyncio.CancelledError:
            exchange.add_done_callback(_log_abandoned_exchange)
            raise

    async def _exchange(self, text: str) -> str:
        async with self._lock:
            try:
                await self.send_command(text)
                return await self.receive_response()
            except TransportError:
                self._discard_connection()
                raise

    # -------------------------
    # Heartbeat
    # -------------------------

    def start_heartbeat(self) -> None:
        if self.heartbeat_running:
            return
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="greenlink-heartbeat")
        _LOGGER.info("Heartbeat started (every %.0f s)", self.heartbeat_interval)

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        _LOGGER.info("Heartbeat stopped")

    async def toggle_heartbeat(self) -> bool:
        """Start or stop the heartbeat. Returns True if it is now running."""
        if self.heartbeat_running:
            await self.stop_heartbeat()
            return False
        self.start_heartbeat()
        return True

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self._poll_nodes()
            except TransportError as exc:
                _LOGGER.warning("Error in heartbeat: %s; trying to reconnect", exc)
                if not await self.open():
                    _LOGGER.error("Reconnection failed, stopping heartbeat")
                    return
                continue
            await asyncio.sleep(self.heartbeat_interval)

    async def _poll_nodes(self) -> None:
        for node_id in self.node_ids:
            line = serialize_command(RequestSensorData(node_id))
            try:
                response = await self.request(line)
            except (ChecksumMismatch, MalformedEnvelope, CryptoError) as exc:
                _LOGGER.warning("Heartbeat response for node %s dropped: %s", node_id, exc)
                continue
            _LOGGER.info("Heartbeat response: %s", response)
