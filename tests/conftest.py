import asyncio
import hashlib

import pytest

from bitfield import Bitfield
from config import Config
from messages import (
    HANDSHAKE_LENGTH,
    KEEP_ALIVE,
    MSG_CHOKE,
    MSG_INTERESTED,
    MSG_PIECE,
    MSG_REQUEST,
    MSG_UNCHOKE,
    Message,
    build_handshake,
    format_bitfield,
    format_piece,
    format_request,
    parse_piece,
    parse_request,
    read_message,
)
from parser import TorrentInfo
from tracker import PeerAddress

FAKE_PEER_ID = b'-FK0001-' + b'\x01' * 12


def make_torrent(content: bytes, piece_length: int, name: str = "file.bin") -> TorrentInfo:
    hashes = tuple(
        hashlib.sha1(content[i:i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    return TorrentInfo(
        announce="http://tracker.test/announce",
        info_hash=hashlib.sha1(b"info:" + content).digest(),
        piece_hashes=hashes,
        piece_length=piece_length,
        length=len(content),
        name=name,
        peer_id=b'-PC0001-' + b'\x02' * 12,
    )


@pytest.fixture(autouse=True)
def fast_timeouts(monkeypatch):
    monkeypatch.setattr(Config, "CONNECT_TIMEOUT", 2)
    monkeypatch.setattr(Config, "HANDSHAKE_TIMEOUT", 2)
    monkeypatch.setattr(Config, "BITFIELD_TIMEOUT", 0.3)
    monkeypatch.setattr(Config, "READ_TIMEOUT", 2)
    monkeypatch.setattr(Config, "UNCHOKE_TIMEOUT", 0.3)
    monkeypatch.setattr(Config, "SEED_IDLE_TIMEOUT", 5)


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakePeer:
    """
    A scripted remote peer listening on loopback.

    mode decides what happens when we request a block:
      "serve"     answer with the real bytes
      "corrupt"   answer with every byte flipped
      "choke"     send choke instead of the first block
      "malformed" send a frame declaring 1000 bytes for a request-shaped message
      "drop"      close the socket
      "ignore"    never answer

    keep_alive_every, when set, sends a keep-alive at that interval for as
    long as the connection is open.
    """

    def __init__(self, torrent: TorrentInfo, content: bytes, mode: str = "serve", pieces=None,
                 send_bitfield: bool = True, unchoke: bool = True, info_hash: bytes = None,
                 keep_alive_every: float = None):
        self.torrent = torrent
        self.content = content
        self.mode = mode
        self.pieces = set(range(torrent.num_pieces)) if pieces is None else set(pieces)
        self.send_bitfield = send_bitfield
        self.unchoke = unchoke
        self.info_hash = info_hash or torrent.info_hash
        self.keep_alive_every = keep_alive_every

        self.requests = []          # BlockRequest received from the client
        self.messages = []          # every Message received (None for keep-alive)
        self.blocks = asyncio.Queue()
        self.writer = None
        self.server = None
        self.address = None
        self._writers = []

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self.server.sockets[0].getsockname()[1]
        self.address = PeerAddress("127.0.0.1", port)
        return self

    async def __aexit__(self, *exc_info):
        for writer in self._writers:
            writer.close()
        self.server.close()

    @property
    def keep_alives(self) -> int:
        return sum(1 for msg in self.messages if msg is None)

    async def request_block(self, index: int, begin: int, length: int, timeout: float = 2.0):
        """Act as a leecher: ask the client for a block and wait for the answer."""
        self.writer.write(format_request(index, begin, length).serialize())
        await self.writer.drain()
        return await asyncio.wait_for(self.blocks.get(), timeout)

    async def _send_keep_alives(self, writer):
        while not writer.is_closing():
            writer.write(KEEP_ALIVE)
            await asyncio.sleep(self.keep_alive_every)

    async def _handle(self, reader, writer):
        self.writer = writer
        self._writers.append(writer)
        keep_alive_task = None
        try:
            await reader.readexactly(HANDSHAKE_LENGTH)
            writer.write(build_handshake(self.info_hash, FAKE_PEER_ID))
            if self.send_bitfield:
                bitfield = Bitfield(self.torrent.num_pieces)
                for index in self.pieces:
                    bitfield.set_piece(index)
                writer.write(format_bitfield(bytes(bitfield)).serialize())
            await writer.drain()
            if self.keep_alive_every:
                keep_alive_task = asyncio.create_task(self._send_keep_alives(writer))

            while True:
                msg = await read_message(reader)
                self.messages.append(msg)
                if msg is None:
                    continue
                if msg.id == MSG_INTERESTED and self.unchoke:
                    writer.write(Message(MSG_UNCHOKE).serialize())
                elif msg.id == MSG_REQUEST:
                    if not await self._answer(parse_request(msg), writer):
                        return
                elif msg.id == MSG_PIECE:
                    await self.blocks.put(parse_piece(msg))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, OSError):
            return
        finally:
            if keep_alive_task is not None:
                keep_alive_task.cancel()
            writer.close()

    async def _answer(self, request, writer) -> bool:
        self.requests.append(request)
        start = self.torrent.piece_offset(request.index) + request.begin
        data = self.content[start:start + request.length]

        if self.mode == "corrupt":
            data = bytes(b ^ 0xFF for b in data)
        elif self.mode == "choke":
            if len(self.requests) == 1:
                writer.write(Message(MSG_CHOKE).serialize())
            return True
        elif self.mode == "malformed":
            writer.write((1000).to_bytes(4, "big") + bytes([MSG_REQUEST]) + b"\x00" * 10)
            return True
        elif self.mode == "drop":
            return False
        elif self.mode == "ignore":
            return True

        writer.write(format_piece(request.index, request.begin, data).serialize())
        return True
