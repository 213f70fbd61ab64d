"""Exception types raised by the torrent client."""


class TorrentError(Exception):
    pass


class TorrentParseError(TorrentError):
    """The .torrent file could not be decoded or is missing required keys."""


class TrackerError(TorrentError):
    """The tracker could not be reached or returned an unusable response."""


class HandshakeError(TorrentError):
    """The peer handshake failed: bad protocol string, info-hash mismatch, timeout."""


class MalformedMessage(TorrentError):
    """A wire message whose framing is inconsistent with its message id."""


class DownloadError(TorrentError):
    pass


class DownloadTimeout(DownloadError):
    """The peer never unchoked us within the allowed wait."""


class PeerChoked(DownloadError):
    """The peer choked us in the middle of a piece."""


class ConnectionLost(DownloadError):
    """The socket failed, idled out or carried a malformed frame. The connection is closed."""


class HashMismatch(TorrentError):
    def __init__(self, index: int):
        super().__init__(f"piece {index} failed hash verification")
        self.index = index


class InsufficientPeers(TorrentError):
    """No live connection is left that can finish the download."""


class CorruptDownload(TorrentError):
    """The finished file failed the whole-file re-check."""
