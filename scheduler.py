import asyncio
from collections import Counter
from typing import Optional

from config import Config
from errors import ConnectionLost, DownloadError, HashMismatch, InsufficientPeers
from helpers import format_size, log_event
from piece_verifier import BufferPool, PieceResult, PieceWork, verify_piece


class PieceFileWriter:
    """Writes verified pieces at their offsets in a file opened for random access."""

    def __init__(self, file_handle):
        self.file_handle = file_handle

    def write_piece(self, index: int, offset: int, data: bytes):
        self.file_handle.seek(offset)
        self.file_handle.write(data)
        self.file_handle.flush()


class PieceScheduler:
    """
    Hands pieces out to one worker task per peer connection.

    Every piece index is in exactly one of `pending`, `in_flight` or
    `completed`. A piece only leaves `in_flight` when it is either returned
    to `pending` after a failed attempt or written by the writer task.
    All three are guarded by one asyncio.Condition.
    """

    def __init__(self, torrent, writer: PieceFileWriter, pool: Optional[BufferPool] = None):
        self.torrent = torrent
        self.writer = writer
        self.pool = pool or BufferPool(torrent.piece_length)

        self.pending = {
            index: PieceWork(index, piece_hash, torrent.piece_size(index))
            for index, piece_hash in enumerate(torrent.piece_hashes)
        }
        self.in_flight = {}
        self.completed = set()

        self.connections = []
        self.downloaded_bytes = 0
        self._condition = asyncio.Condition()
        self._results = asyncio.Queue()
        self._writer_error = None
        self._have_tasks = set()

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @property
    def in_flight_count(self) -> int:
        return len(self.in_flight)

    @property
    def completed_count(self) -> int:
        return len(self.completed)

    @property
    def is_complete(self) -> bool:
        return len(self.completed) == self.torrent.num_pieces

    # --- Work set operations ---

    async def claim(self, conn, skip=()) -> Optional[PieceWork]:
        """
        Take the lowest pending piece this peer has, moving it in flight.
        Indices in `skip` are never handed to this peer.

        Waits while the peer has none of the pending pieces but some piece is
        still in flight elsewhere (it may fail and come back). Returns None
        when there is nothing left this peer can help with.
        """
        async with self._condition:
            while True:
                if self._writer_error is not None or not conn.is_alive:
                    return None

                for index in sorted(self.pending):
                    if index not in skip and conn.has_piece(index):
                        work = self.pending.pop(index)
                        self.in_flight[index] = work
                        return work

                if not self.in_flight:
                    return None
                log_event("SCHEDULER", f"[{conn.peer_addr}] Nothing to claim, waiting on "
                                       f"{self.in_flight_count} pieces in flight", "debug")
                await self._condition.wait()

    async def requeue(self, work: PieceWork):
        async with self._condition:
            del self.in_flight[work.index]
            self.pending[work.index] = work
            self._condition.notify_all()
        # let woken workers claim it before the caller loops back
        await asyncio.sleep(0)

    async def _mark_completed(self, index: int):
        async with self._condition:
            del self.in_flight[index]
            self.completed.add(index)
            self._condition.notify_all()

    # --- Tasks ---

    async def _worker(self, conn):
        hash_failures = Counter()  # piece index -> bad copies received from this peer
        banned = set()
        while True:
            work = await self.claim(conn, skip=banned)
            if work is None:
                log_event("SCHEDULER", f"[{conn.peer_addr}] No more pieces for this peer, worker finished", "debug")
                return

            buffer = self.pool.acquire()
            try:
                data = await conn.download_piece(work, buffer)
                verify_piece(work, data)
                result = PieceResult(work.index, bytes(data))
            except HashMismatch as e:
                hash_failures[work.index] += 1
                if hash_failures[work.index] >= Config.MAX_HASH_FAILURES:
                    log_event("SCHEDULER", f"[{conn.peer_addr}] {e} {hash_failures[work.index]} times, "
                                           f"no longer asking this peer for it", "warning")
                    banned.add(work.index)
                else:
                    log_event("SCHEDULER", f"[{conn.peer_addr}] {e}, re-queueing", "warning")
                await self.requeue(work)
                continue
            except ConnectionLost as e:
                log_event("SCHEDULER", f"[{conn.peer_addr}] {e}, worker stopped", "warning")
                await self.requeue(work)
                return
            except DownloadError as e:
                log_event("SCHEDULER", f"[{conn.peer_addr}] {e}, re-queueing piece {work.index}", "warning")
                await self.requeue(work)
                continue
            except BaseException:
                # cancellation or a bug: never lose the piece
                await self.requeue(work)
                raise
            finally:
                self.pool.release(buffer)

            await self._results.put(result)

    async def _write_results(self):
        """Single consumer: the only place that touches the output file."""
        while True:
            result = await self._results.get()
            try:
                if result.index in self.completed:
                    raise RuntimeError(f"piece {result.index} was already written")
                self.writer.write_piece(result.index, self.torrent.piece_offset(result.index), result.data)
            except Exception as e:
                log_event("SCHEDULER", f"Could not write piece {result.index}: {e}", "error")
                async with self._condition:
                    self._writer_error = e
                    self._condition.notify_all()
                raise
            finally:
                self._results.task_done()

            await self._mark_completed(result.index)
            self.downloaded_bytes += len(result.data)
            percentage = self.downloaded_bytes / self.torrent.length * 100
            log_event("SCHEDULER", f"Piece {result.index} saved. Total downloaded: "
                                   f"{format_size(self.downloaded_bytes)}/{format_size(self.torrent.length)} "
                                   f"({percentage:.2f}%)")

            # Inform peers that we have this piece
            for conn in self.connections:
                if conn.is_alive:
                    task = asyncio.create_task(conn.send_have(result.index))
                    self._have_tasks.add(task)
                    task.add_done_callback(self._have_tasks.discard)

    async def run(self, connections: list):
        """
        Download every piece using the given connections.

        Raises:
            InsufficientPeers: the remaining pieces cannot be fetched from any live connection.
            Exception: whatever the writer failed with (e.g. OSError).
        """
        self.connections = [conn for conn in connections if conn.is_alive]
        if not self.connections:
            raise InsufficientPeers("no live connections to download from")

        log_event("SCHEDULER", f"Downloading {self.torrent.num_pieces} pieces from {len(self.connections)} peers")
        writer_task = asyncio.create_task(self._write_results())
        workers = [asyncio.create_task(self._worker(conn)) for conn in self.connections]
        workers_done = asyncio.gather(*workers)
        try:
            await asyncio.wait({workers_done, writer_task}, return_when=asyncio.FIRST_COMPLETED)
            if not writer_task.done():
                workers_done.result()
                # results queued by workers that stopped early still need writing
                joined = asyncio.create_task(self._results.join())
                await asyncio.wait({joined, writer_task}, return_when=asyncio.FIRST_COMPLETED)
                joined.cancel()
        finally:
            for task in workers:
                task.cancel()
            writer_task.cancel()
            await asyncio.gather(writer_task, workers_done, *self._have_tasks, return_exceptions=True)

        if self._writer_error is not None:
            raise self._writer_error

        if not self.is_complete:
            raise InsufficientPeers(
                f"{self.pending_count} pieces left but no connected peer can provide them "
                f"({sum(conn.is_alive for conn in self.connections)} connections alive)")

        log_event("SCHEDULER", "All pieces downloaded and verified", "success")
