import asyncio
import enum
import time
from typing import Optional

from bitfield import Bitfield
from config import Config
from errors import ConnectionLost, DownloadTimeout, HandshakeError, MalformedMessage, PeerChoked
from helpers import log_event
from messages import (
    HANDSHAKE_LENGTH,
    KEEP_ALIVE,
    MSG_BITFIELD,
    MSG_CANCEL,
    MSG_CHOKE,
    MSG_HAVE,
    MSG_INTERESTED,
    MSG_NOT_INTERESTED,
    MSG_PIECE,
    MSG_REQUEST,
    MSG_UNCHOKE,
    Message,
    build_handshake,
    format_have,
    format_piece,
    format_request,
    parse_handshake,
    parse_have,
    parse_piece,
    parse_request,
    read_message,
)
from piece_verifier import PieceAssembler, PieceWork

# errors that mean the socket can no longer be trusted
TRANSPORT_ERRORS = (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError, MalformedMessage)


class ConnectionState(enum.Enum):
    HANDSHAKING = "handshaking"
    IDLE = "idle"
    REQUESTING = "requesting"
    SEEDING = "seeding"
    CLOSED = "closed"


class PeerConnection:
    """
    One TCP connection to one peer, after a successful handshake.

    All frames go out through `_send`, which holds a per-connection lock so
    keep-alives from the coordinator never interleave with a worker's writes.
    Only the task that owns the connection (a scheduler worker, later the
    seeder) reads from it.
    """

    def __init__(self, address, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 remote_peer_id: bytes, num_pieces: int):
        self.address = address
        self.peer_addr = f"{address[0]}:{address[1]}"
        self.reader = reader
        self.writer = writer
        self.remote_peer_id = remote_peer_id
        self.bitfield = Bitfield(num_pieces)

        self.peer_choking = True        # Initially, peer chokes us
        self.peer_interested = False
        self.am_choking = True          # Initially, we choke the peer
        self.am_interested = False

        self.state = ConnectionState.HANDSHAKING
        self.last_activity = time.monotonic()   # last block received or served
        self._write_lock = asyncio.Lock()

    def __repr__(self):
        return f"<PeerConnection {self.address} {self.state.value}>"

    @property
    def is_alive(self) -> bool:
        return self.state is not ConnectionState.CLOSED

    # --- Connection setup ---

    @classmethod
    async def connect(cls, address, peer_id: bytes, info_hash: bytes, num_pieces: int) -> "PeerConnection":
        """
        Establishes a TCP connection, performs the handshake, and reads the peer's bitfield.

        Args:
            address (PeerAddress): ip and port of the peer.
            peer_id (bytes): Our 20-byte peer ID.
            info_hash (bytes): The 20-byte SHA1 hash of the torrent's info dictionary.
            num_pieces (int): Number of pieces in the torrent, to size the bitfield.

        Raises:
            HandshakeError: the peer is unreachable, speaks another protocol,
                serves another torrent, or does not answer in time.
        """
        ip, port = address
        handshake_message = build_handshake(info_hash, peer_id)
        log_event("PEER", f"[{ip}:{port}] Attempting to connect")

        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(ip, port),
                                                    timeout=Config.CONNECT_TIMEOUT)
        except (asyncio.TimeoutError, OSError) as e:
            raise HandshakeError(f"could not connect to {ip}:{port}: {e!r}") from e

        try:
            writer.write(handshake_message)
            await writer.drain()

            received_handshake = await asyncio.wait_for(reader.readexactly(HANDSHAKE_LENGTH),
                                                        timeout=Config.HANDSHAKE_TIMEOUT)
            received_info_hash, remote_peer_id = parse_handshake(received_handshake)
            # prevents cross-torrent pollution
            if received_info_hash != info_hash:
                raise HandshakeError(
                    f"info hash mismatch. Expected {info_hash.hex()}, got {received_info_hash.hex()}")

            conn = cls(address, reader, writer, remote_peer_id, num_pieces)
            await conn._read_initial_bitfield()
        except (asyncio.TimeoutError, OSError, asyncio.IncompleteReadError, MalformedMessage) as e:
            writer.close()
            raise HandshakeError(f"handshake with {ip}:{port} failed: {e!r}") from e
        except HandshakeError:
            writer.close()
            raise

        log_event("PEER", f"[{conn.peer_addr}] Handshake successful. Peer ID: {remote_peer_id.hex()}, "
                          f"{conn.bitfield.count()} pieces available", "success")
        return conn

    async def _read_initial_bitfield(self):
        """
        Peers send their bitfield straight after the handshake, possibly behind
        an unchoke or a few haves. A missing one means "has nothing".
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + Config.BITFIELD_TIMEOUT
        try:
            while (remaining := deadline - loop.time()) > 0:
                message = await self._read(timeout=remaining)
                if message is None:
                    continue
                if message.id == MSG_BITFIELD:
                    try:
                        self.bitfield.load(message.payload)
                    except ValueError as e:
                        raise HandshakeError(f"malformed bitfield: {e}") from e
                    return
                self._handle_state_message(message)
        except asyncio.TimeoutError:
            log_event("PEER", f"[{self.peer_addr}] No bitfield received, "
                              f"{self.bitfield.count()} pieces known from have messages", "debug")
        finally:
            self.state = ConnectionState.IDLE

    # --- Writing ---

    async def _send(self, message: Optional[Message]):
        """Send a message (None is a keep-alive) as one atomic frame."""
        data = KEEP_ALIVE if message is None else message.serialize()
        async with self._write_lock:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout=Config.READ_TIMEOUT)

    async def send_keep_alive(self):
        """Best effort: a failed write shows up as the next read/write error of the owning task."""
        if not self.is_alive:
            return
        try:
            await self._send(None)
        except (OSError, asyncio.TimeoutError) as e:
            log_event("PEER", f"[{self.peer_addr}] Keep-alive failed: {e!r}", "warning")

    async def send_have(self, index: int):
        """Best effort, like send_keep_alive."""
        if not self.is_alive:
            return
        try:
            await self._send(format_have(index))
        except (OSError, asyncio.TimeoutError) as e:
            log_event("PEER", f"[{self.peer_addr}] Sending have({index}) failed: {e!r}", "warning")

    # --- Reading ---

    async def _read(self, timeout: Optional[float]) -> Optional[Message]:
        return await read_message(self.reader, timeout=timeout)

    def _handle_state_message(self, message: Message):
        """Apply choke/unchoke/interest/availability messages to the connection state."""
        if message.id == MSG_CHOKE:
            self.peer_choking = True
            log_event("PEER", f"[{self.peer_addr}] Received CHOKE", "debug")
        elif message.id == MSG_UNCHOKE:
            self.peer_choking = False
            log_event("PEER", f"[{self.peer_addr}] Received UNCHOKE", "debug")
        elif message.id == MSG_INTERESTED:
            self.peer_interested = True
        elif message.id == MSG_NOT_INTERESTED:
            self.peer_interested = False
        elif message.id == MSG_HAVE:
            index = parse_have(message)
            if 0 <= index < self.bitfield.num_pieces:
                self.bitfield.set_piece(index)
        elif message.id == MSG_BITFIELD:
            try:
                self.bitfield.load(message.payload)
            except ValueError as e:
                raise MalformedMessage(f"bad bitfield: {e}") from e

    def has_piece(self, index: int) -> bool:
        return self.bitfield.has_piece(index)

    # --- Download side ---

    async def download_piece(self, work: PieceWork, buffer: bytearray) -> memoryview:
        """
        Download one piece into `buffer` and return a view of exactly work.length bytes.

        Raises:
            DownloadTimeout: the peer did not unchoke us within Config.UNCHOKE_TIMEOUT.
            PeerChoked: the peer choked us before the piece was complete.
            ConnectionLost: socket error, malformed frame, or no block within
                Config.READ_TIMEOUT; the connection has been closed.
        """
        if not self.is_alive:
            raise ConnectionLost(f"connection to {self.address} is closed")

        assembler = PieceAssembler(work, buffer)
        try:
            if not self.am_interested:
                await self._send(Message(MSG_INTERESTED))
                self.am_interested = True

            if self.peer_choking:
                await self._wait_for_unchoke(work)

            self.state = ConnectionState.REQUESTING
            self.last_activity = time.monotonic()
            while not assembler.done:
                # pipeline requests to hide the round trip
                while assembler.backlog < Config.MAX_BACKLOG and assembler.has_next_request():
                    begin, length = assembler.next_request()
                    await self._send(format_request(work.index, begin, length))

                # keep-alives and other chatter do not extend the wait for a block
                remaining = self.last_activity + Config.READ_TIMEOUT - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError(f"no block received for {Config.READ_TIMEOUT}s")
                message = await self._read(timeout=remaining)
                if message is None:
                    continue
                if message.id == MSG_PIECE:
                    block = parse_piece(message)
                    if block.index != work.index or not assembler.add_block(block.begin, block.data):
                        log_event("PEER", f"[{self.peer_addr}] Ignoring unexpected block {block.index}:{block.begin}", "debug")
                    else:
                        self.last_activity = time.monotonic()
                    continue

                self._handle_state_message(message)
                if self.peer_choking:
                    self.state = ConnectionState.IDLE
                    raise PeerChoked(f"{self.address} choked us during piece {work.index}")
        except TRANSPORT_ERRORS as e:
            await self.close()
            raise ConnectionLost(f"lost {self.address} during piece {work.index}: {e!r}") from e

        self.state = ConnectionState.IDLE
        return assembler.piece()

    async def _wait_for_unchoke(self, work: PieceWork):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + Config.UNCHOKE_TIMEOUT
        while self.peer_choking:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DownloadTimeout(f"{self.address} did not unchoke us for piece {work.index}")
            try:
                message = await self._read(timeout=remaining)
            except asyncio.TimeoutError:
                # nothing was consumed from the stream, the connection stays usable
                raise DownloadTimeout(f"{self.address} did not unchoke us for piece {work.index}") from None
            if message is not None and message.id not in (MSG_PIECE, MSG_REQUEST, MSG_CANCEL):
                self._handle_state_message(message)

    # --- Upload side ---

    async def serve_requests(self, piece_reader):
        """
        Answer block requests from the completed file until the connection drops.

        Args:
            piece_reader (PieceReader): read-only access to the verified content.
        """
        if not self.is_alive:
            return

        self.state = ConnectionState.SEEDING
        try:
            await self._send(Message(MSG_UNCHOKE))
            self.am_choking = False
            if self.am_interested:
                # we have everything now
                await self._send(Message(MSG_NOT_INTERESTED))
                self.am_interested = False

            while True:
                message = await self._read(timeout=Config.SEED_IDLE_TIMEOUT)
                if message is None:
                    continue
                if message.id == MSG_REQUEST:
                    await self._serve_request(message, piece_reader)
                elif message.id in (MSG_CANCEL, MSG_PIECE):
                    # requests are answered as they arrive, nothing is queued to cancel
                    continue
                else:
                    self._handle_state_message(message)
        except TRANSPORT_ERRORS as e:
            log_event("SEED", f"[{self.peer_addr}] Connection lost while seeding: {e!r}", "warning")
        finally:
            await self.close()

    async def _serve_request(self, message: Message, piece_reader):
        request = parse_request(message)
        if request.length > Config.MAX_REQUEST_LENGTH:
            log_event("SEED", f"[{self.peer_addr}] Refusing oversized request {request}", "warning")
            return
        try:
            block = piece_reader.read_block(request.index, request.begin, request.length)
        except ValueError as e:
            log_event("SEED", f"[{self.peer_addr}] Ignoring invalid request {request}: {e}", "warning")
            return
        await self._send(format_piece(request.index, request.begin, block))
        self.last_activity = time.monotonic()
        log_event("SEED", f"[{self.peer_addr}] Sent block {request.index}:{request.begin} ({request.length} bytes)", "debug")

    async def close(self):
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        log_event("PEER", f"[{self.peer_addr}] Closing connection", "debug")
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, asyncio.IncompleteReadError) as e:
            log_event("PEER", f"[{self.peer_addr}] Error while closing: {e!r}", "debug")
