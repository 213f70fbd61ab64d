import hashlib
import os
from dataclasses import dataclass
from typing import Optional

from config import Config
from errors import HashMismatch
from helpers import log_event


@dataclass(frozen=True)
class PieceWork:
    index: int
    hash: bytes
    length: int


@dataclass(frozen=True)
class PieceResult:
    index: int
    data: bytes


class PieceAssembler:
    """
    Collects the blocks of one piece into a caller-supplied buffer.

    Requests are handed out in order; `backlog` counts the ones sent but not
    answered yet. A block is only accepted if it exactly matches a request
    that is still outstanding.
    """

    def __init__(self, work: PieceWork, buffer: bytearray, block_size: Optional[int] = None):
        if len(buffer) < work.length:
            raise ValueError(f"buffer of {len(buffer)} bytes cannot hold piece {work.index} ({work.length} bytes)")
        self.work = work
        self.buffer = buffer
        self.block_size = block_size or Config.BLOCK_SIZE
        self.requested = 0      # bytes covered by requests sent so far
        self.downloaded = 0     # bytes received
        self.outstanding = {}   # begin -> length

    @property
    def backlog(self) -> int:
        return len(self.outstanding)

    @property
    def done(self) -> bool:
        return self.downloaded == self.work.length

    def has_next_request(self) -> bool:
        return self.requested < self.work.length

    def next_request(self) -> tuple[int, int]:
        """Return (begin, length) of the next block and mark it outstanding."""
        begin = self.requested
        length = min(self.block_size, self.work.length - begin)
        self.outstanding[begin] = length
        self.requested += length
        return begin, length

    def add_block(self, begin: int, data: bytes) -> bool:
        """Copy a received block into place. Returns False if it was not expected."""
        if self.outstanding.get(begin) != len(data):
            return False
        del self.outstanding[begin]
        self.buffer[begin:begin + len(data)] = data
        self.downloaded += len(data)
        return True

    def piece(self) -> memoryview:
        return memoryview(self.buffer)[:self.work.length]


class BufferPool:
    """Piece-sized bytearrays reused across downloads instead of allocating one per attempt."""

    def __init__(self, piece_length: int):
        self.piece_length = piece_length
        self._free = []

    def acquire(self) -> bytearray:
        if self._free:
            return self._free.pop()
        return bytearray(self.piece_length)

    def release(self, buffer: bytearray):
        if len(buffer) == self.piece_length:
            self._free.append(buffer)

    @property
    def idle(self) -> int:
        return len(self._free)


def verify_piece(work: PieceWork, data) -> None:
    """Raise HashMismatch unless the SHA1 of the complete piece equals work.hash."""
    if len(data) != work.length or hashlib.sha1(data).digest() != work.hash:
        raise HashMismatch(work.index)


def verify_file(file_path: str, torrent) -> list[int]:
    """
    Re-hash every piece of a finished download.

    Returns:
        list: indices of pieces that are missing or do not match; empty when
            the file is complete and intact.
    """
    bad_pieces = []
    size = os.path.getsize(file_path)
    if size != torrent.length:
        log_event("VERIFY", f"{file_path} is {size} bytes, expected {torrent.length}", "warning")

    with open(file_path, 'rb') as f:
        for index, expected in enumerate(torrent.piece_hashes):
            piece = f.read(torrent.piece_size(index))
            if len(piece) != torrent.piece_size(index) or hashlib.sha1(piece).digest() != expected:
                bad_pieces.append(index)

    if size != torrent.length and not bad_pieces:
        # trailing garbage past the last piece
        bad_pieces.append(torrent.num_pieces - 1)

    if bad_pieces:
        log_event("VERIFY", f"{len(bad_pieces)} piece(s) failed verification: {bad_pieces[:10]}", "error")
    else:
        log_event("VERIFY", "All pieces verified successfully.", "success")
    return bad_pieces
