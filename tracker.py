import ipaddress
import os
from typing import NamedTuple

import bencodepy
import requests

from config import Config
from errors import TrackerError
from helpers import log_event


class PeerAddress(NamedTuple):
    ip: str
    port: int

    def __str__(self):
        return f"{self.ip}:{self.port}"


def generate_peer_id() -> bytes:
    # Client prefix (8 bytes) followed by random bytes, 20 bytes in total
    client_prefix = b'-PC0001-'
    return client_prefix + os.urandom(20 - len(client_prefix))


def parse_compact_peers(peers_data: bytes) -> list[PeerAddress]:
    """
    Decode a compact peer list: 6 bytes per peer, 4 for the IPv4 address and
    2 for the big-endian port.
    """
    if len(peers_data) % 6 != 0:
        raise TrackerError(f"received malformed peers list of length {len(peers_data)}")

    peer_list = []
    for i in range(0, len(peers_data), 6):
        ip = str(ipaddress.IPv4Address(peers_data[i:i + 4]))
        port = int.from_bytes(peers_data[i + 4:i + 6], 'big')
        peer_list.append(PeerAddress(ip, port))
    return peer_list


def request_peers(torrent, peer_id: bytes, port: int = Config.DEFAULT_PORT) -> list[PeerAddress]:
    """
    Makes an announce request to the torrent's tracker and returns the peers it lists.

    Args:
        torrent (TorrentInfo): parsed metadata; announce and info_hash are used.
        peer_id (bytes): The 20-byte client-generated peer ID.
        port (int): The port reported to the tracker.

    Returns:
        list: PeerAddress entries, possibly empty.

    Raises:
        TrackerError: the tracker is unreachable, answers with an HTTP error or
            a failure reason, or the body is not a valid compact response.
    """
    params = {
        'info_hash': torrent.info_hash,  # requests will correctly URL-encode this bytes object
        'peer_id': peer_id,
        'port': port,
        'uploaded': 0,
        'downloaded': 0,
        'compact': 1,
        'left': 0,
    }

    try:
        response = requests.get(torrent.announce, params=params, timeout=Config.TRACKER_TIMEOUT)
        # Raise an HTTPError for bad responses (4xx or 5xx)
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        raise TrackerError(f"HTTP error from tracker {torrent.announce}: {e}") from e
    except requests.exceptions.Timeout as e:
        raise TrackerError(f"timeout connecting to tracker {torrent.announce}") from e
    except requests.exceptions.RequestException as e:
        raise TrackerError(f"could not reach tracker {torrent.announce}: {e}") from e

    try:
        tracker_data = bencodepy.decode(response.content)
    except bencodepy.exceptions.DecodingError as e:
        # This means the tracker returned non-bencoded data (e.g., an HTML page)
        raise TrackerError(f"malformed tracker response: {response.content[:100]!r}") from e

    if not isinstance(tracker_data, dict):
        raise TrackerError("tracker response is not a dictionary")

    if b'failure reason' in tracker_data:
        failure_reason = tracker_data[b'failure reason'].decode('utf-8', errors='replace')
        raise TrackerError(f"tracker reported failure: {failure_reason}")

    peers_data = tracker_data.get(b'peers', b'')
    if not isinstance(peers_data, bytes):
        raise TrackerError(f"unexpected 'peers' format from tracker: {type(peers_data).__name__}")

    peer_list = parse_compact_peers(peers_data)
    log_event("TRACKER", f"Received {len(peer_list)} peers from {torrent.announce}")
    return peer_list
