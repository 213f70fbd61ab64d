import asyncio
import os
from typing import Optional

from config import Config
from errors import CorruptDownload, HandshakeError, InsufficientPeers
from helpers import log_event
from peer_connection import PeerConnection
from piece_verifier import verify_file
from scheduler import PieceFileWriter, PieceScheduler


class KeepAliveCoordinator:
    """Sends a keep-alive on every live connection at a fixed interval, for the life of the process."""

    def __init__(self, interval: Optional[float] = None):
        self.interval = interval if interval is not None else Config.KEEP_ALIVE_INTERVAL
        self.connections = []
        self._task = None

    def register(self, connections):
        self.connections.extend(connections)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            self.connections = [conn for conn in self.connections if conn.is_alive]
            log_event("KEEPALIVE", f"Sending keep-alive to {len(self.connections)} peers", "debug")
            await asyncio.gather(*(conn.send_keep_alive() for conn in self.connections))


async def connect_to_peers(torrent, peers: list, keep_alive: Optional[KeepAliveCoordinator] = None) -> list:
    """
    Connect and handshake with every peer concurrently.

    Args:
        torrent (TorrentInfo): metadata; info_hash, peer_id and num_pieces are used.
        peers (list): PeerAddress entries from the tracker.
        keep_alive (KeepAliveCoordinator): if given, the connections are
            registered with it and it is started.

    Returns:
        list: the PeerConnection objects that completed the handshake.

    Raises:
        InsufficientPeers: not a single peer could be reached.
    """
    log_event("PEER", f"Connecting to {len(peers)} peers")

    async def attempt(address):
        try:
            return await PeerConnection.connect(address, torrent.peer_id, torrent.info_hash, torrent.num_pieces)
        except HandshakeError as e:
            log_event("PEER", f"Could not handshake with {address[0]}:{address[1]}. Disconnecting ({e})", "warning")
            return None

    # gather keeps the peer order, each task only ever contributes its own slot
    results = await asyncio.gather(*(attempt(address) for address in peers))
    connections = [conn for conn in results if conn is not None]

    log_event("PEER", f"Finished connection attempts. Successful: {len(connections)}, "
                      f"Failed: {len(peers) - len(connections)}")
    if not connections:
        raise InsufficientPeers("failed to connect to any peers")

    if keep_alive is not None:
        keep_alive.register(connections)
        keep_alive.start()
    return connections


async def download_to_file(path: str, torrent, connections: list, writer_factory=PieceFileWriter):
    """
    Download the whole torrent into a new file at `path`.

    Pieces are written into a ".part" file which is renamed once every piece
    has been written and the file re-verified. On failure the partial file is
    removed and the error re-raised.

    Raises:
        FileExistsError: `path` already exists.
        InsufficientPeers: the connections cannot finish the download.
        CorruptDownload: the finished file failed the whole-file re-check.
        OSError: the partial file could not be written.
    """
    if os.path.exists(path):
        raise FileExistsError(f"refusing to overwrite {path}")

    partial_path = Config.partial_path(path)
    os.makedirs(os.path.dirname(partial_path) or '.', exist_ok=True)
    try:
        with open(partial_path, 'wb+') as f:
            f.truncate(torrent.length)  # Pre-allocate
            scheduler = PieceScheduler(torrent, writer_factory(f))
            await scheduler.run(connections)

        bad_pieces = verify_file(partial_path, torrent)
        if bad_pieces:
            raise CorruptDownload(f"pieces {bad_pieces} are corrupt on disk after download")
        os.replace(partial_path, path)
    except BaseException:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise

    log_event("DOWNLOAD", f"Download completed: {path}", "success")
