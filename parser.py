import hashlib
from dataclasses import dataclass, field

import bencodepy

from errors import TorrentParseError
from helpers import format_size, log_event
from tracker import generate_peer_id


@dataclass(frozen=True)
class TorrentInfo:
    """Everything the peer wire engine needs to know about a single-file torrent."""

    announce: str
    info_hash: bytes
    piece_hashes: tuple
    piece_length: int
    length: int
    name: str
    peer_id: bytes = field(default_factory=generate_peer_id)

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    def piece_offset(self, index: int) -> int:
        return index * self.piece_length

    def piece_size(self, index: int) -> int:
        """Length of piece `index`; only the last piece may be shorter."""
        if not 0 <= index < self.num_pieces:
            raise IndexError(f"piece index {index} out of range")
        begin = self.piece_offset(index)
        return min(self.piece_length, self.length - begin)


def decode_value(v):
    if isinstance(v, bytes):
        try:
            return v.decode('utf-8')
        except UnicodeDecodeError:
            return v
    return v


def split_piece_hashes(pieces: bytes) -> tuple:
    if len(pieces) % 20 != 0:
        raise TorrentParseError(f"received malformed pieces of length {len(pieces)}")
    return tuple(pieces[i:i + 20] for i in range(0, len(pieces), 20))


def get_announce_url(meta: dict) -> str:
    announce_url = decode_value(meta.get(b'announce', b''))

    # Fallback to announce-list if announce is missing
    if not announce_url and b'announce-list' in meta:
        # Use the first tracker in the first tier
        announce_list = meta[b'announce-list']
        if isinstance(announce_list, list) and announce_list:
            first_tier = announce_list[0]
            if isinstance(first_tier, list) and first_tier:
                announce_url = decode_value(first_tier[0])
            elif isinstance(first_tier, bytes):
                announce_url = decode_value(first_tier)

    if not announce_url:
        raise TorrentParseError("torrent has no tracker URL")
    return announce_url


def parse_metainfo(raw_data: bytes, peer_id: bytes = None) -> TorrentInfo:
    """
    Decode raw .torrent bytes into a TorrentInfo.

    Args:
        raw_data (bytes): bencoded metainfo.
        peer_id (bytes): 20-byte peer id for this session; generated when omitted.

    Raises:
        TorrentParseError: undecodable data, multi-file torrent, missing keys or
            a piece count that does not match the content length.
    """
    try:
        meta = bencodepy.decode(raw_data)
    except bencodepy.exceptions.DecodingError as e:
        raise TorrentParseError(f"could not decode torrent: {e}") from e

    if not isinstance(meta, dict) or not isinstance(meta.get(b'info'), dict):
        raise TorrentParseError("'info' section missing - invalid torrent file")

    info = meta[b'info']
    if b'files' in info:
        raise TorrentParseError("multi-file torrents are not supported")

    try:
        piece_length = info[b'piece length']
        length = info[b'length']
        pieces = info[b'pieces']
        name = decode_value(info[b'name'])
    except KeyError as e:
        raise TorrentParseError(f"missing key in info dictionary: {e.args[0].decode()}") from e

    if not isinstance(piece_length, int) or piece_length <= 0:
        raise TorrentParseError(f"invalid piece length {piece_length!r}")
    if not isinstance(length, int) or length <= 0:
        raise TorrentParseError(f"invalid length {length!r}")
    if not isinstance(pieces, bytes):
        raise TorrentParseError("'pieces' is not a byte string")

    piece_hashes = split_piece_hashes(pieces)
    expected_pieces = (length + piece_length - 1) // piece_length
    if len(piece_hashes) != expected_pieces:
        raise TorrentParseError(
            f"torrent lists {len(piece_hashes)} piece hashes but {format_size(length)} "
            f"at {piece_length} bytes per piece needs {expected_pieces}"
        )

    # re-encode the info section exactly as decoded and hash it
    info_hash = hashlib.sha1(bencodepy.encode(info)).digest()

    kwargs = {}
    if peer_id is not None:
        kwargs['peer_id'] = peer_id

    return TorrentInfo(
        announce=get_announce_url(meta),
        info_hash=info_hash,
        piece_hashes=piece_hashes,
        piece_length=piece_length,
        length=length,
        name=name if isinstance(name, str) else name.hex(),
        **kwargs,
    )


def parse_torrent_file(file_path: str, peer_id: bytes = None) -> TorrentInfo:
    with open(file_path, 'rb') as f:
        raw_data = f.read()

    torrent = parse_metainfo(raw_data, peer_id)

    log_event("TORRENT", f"Tracker URL: {torrent.announce}")
    log_event("TORRENT", f"File name: {torrent.name} ({format_size(torrent.length)})")
    log_event("TORRENT", f"{torrent.num_pieces} pieces of {torrent.piece_length} bytes, info hash {torrent.info_hash.hex()}")
    return torrent

