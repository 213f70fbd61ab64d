import argparse
import asyncio
import sys

from config import Config
from errors import TorrentError, TorrentParseError, TrackerError
from helpers import log_event, setup_logging
from parser import parse_torrent_file
from peer_manager import KeepAliveCoordinator, connect_to_peers, download_to_file
from seeder import seed_file
from tracker import request_peers


def parse_args(argv=None):
    arg_parser = argparse.ArgumentParser(description="Download a torrent, then seed it until interrupted")
    arg_parser.add_argument("torrent", help="path to the .torrent file")
    arg_parser.add_argument("output", help="path of the file to download to (must not exist)")
    arg_parser.add_argument("--port", type=int, default=Config.DEFAULT_PORT, help="port reported to the tracker")
    arg_parser.add_argument("--log-level", default=Config.LOG_LEVEL, help="DEBUG, INFO, WARNING or ERROR")
    arg_parser.add_argument("--log-file", default=Config.LOG_FILE, help="also write the log to this file")
    return arg_parser.parse_args(argv)


async def run(torrent, peers, output_path: str):
    keep_alive = KeepAliveCoordinator()
    connections = await connect_to_peers(torrent, peers, keep_alive)
    try:
        await download_to_file(output_path, torrent, connections)
        log_event("MAIN", "Leeching complete. Seeding until interrupted (Ctrl-C to exit)", "success")
        await seed_file(connections, torrent, output_path)
    finally:
        await keep_alive.stop()
        for conn in connections:
            await conn.close()


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    # 1. Parse the torrent file
    try:
        torrent = parse_torrent_file(args.torrent)
    except OSError as e:
        log_event("MAIN", f"Could not open torrent file - {e}", "error")
        return 1
    except TorrentParseError as e:
        log_event("MAIN", f"Could not decode torrent file - {e}", "error")
        return 1

    # 2. Get the list of peers from the tracker
    try:
        peers = request_peers(torrent, torrent.peer_id, args.port)
    except TrackerError as e:
        log_event("MAIN", str(e), "error")
        return 1

    # 3. Connect, download, then seed
    try:
        asyncio.run(run(torrent, peers, args.output))
    except KeyboardInterrupt:
        log_event("MAIN", "Client stopped by user (KeyboardInterrupt).")
    except (TorrentError, OSError) as e:
        # InsufficientPeers, CorruptDownload, an existing output file or a failed write
        log_event("MAIN", f"Download failed: {e}", "error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
