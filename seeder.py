import asyncio

from helpers import log_event


class PieceReader:
    """Read-only random access to a completed download."""

    def __init__(self, path: str, torrent):
        self.path = path
        self.torrent = torrent
        self.file_handle = open(path, 'rb')

    def read_block(self, index: int, begin: int, length: int) -> bytes:
        """
        Return `length` bytes at offset `begin` of piece `index`.

        Raises:
            ValueError: the range is empty or falls outside the piece.
        """
        if not 0 <= index < self.torrent.num_pieces:
            raise ValueError(f"piece index {index} out of range")
        piece_size = self.torrent.piece_size(index)
        if length <= 0 or begin < 0 or begin + length > piece_size:
            raise ValueError(f"block {begin}+{length} outside piece {index} of {piece_size} bytes")

        self.file_handle.seek(self.torrent.piece_offset(index) + begin)
        return self.file_handle.read(length)

    def close(self):
        self.file_handle.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


async def seed_file(connections: list, torrent, path: str):
    """
    Serve block requests on every live connection until they have all closed.
    Runs until cancelled otherwise; there is no idle cut-off for the service itself.
    """
    live = [conn for conn in connections if conn.is_alive]
    log_event("SEED", f"Seeding {torrent.name} to {len(live)} peers")

    with PieceReader(path, torrent) as piece_reader:
        await asyncio.gather(*(conn.serve_requests(piece_reader) for conn in live))

    log_event("SEED", "All seeding connections closed")
