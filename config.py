class Config:
    """Global configuration settings"""

    # Network settings
    DEFAULT_PORT = 6881
    CONNECT_TIMEOUT = 3       # TCP connect to a peer
    HANDSHAKE_TIMEOUT = 5     # waiting for the 68-byte handshake reply
    BITFIELD_TIMEOUT = 5      # waiting for the optional first bitfield
    READ_TIMEOUT = 30         # idle read while requesting blocks
    UNCHOKE_TIMEOUT = 30      # waiting to be unchoked before a piece
    SEED_IDLE_TIMEOUT = 300   # idle read while seeding
    TRACKER_TIMEOUT = 15
    KEEP_ALIVE_INTERVAL = 30

    # Protocol settings
    BLOCK_SIZE = 2 ** 14           # 16KB, the largest block most clients will serve
    MAX_BACKLOG = 5                # pipelined requests per connection
    MAX_REQUEST_LENGTH = 2 ** 17   # largest block we answer or accept
    MAX_MESSAGE_LENGTH = 2 ** 20   # anything longer is treated as hostile
    MAX_HASH_FAILURES = 3          # bad copies of one piece before a peer is no longer asked for it

    # Logging settings
    LOG_LEVEL = "INFO"
    LOG_FILE = None

    @staticmethod
    def partial_path(path: str) -> str:
        """Path the download is written to until every piece is verified."""
        return path + ".part"
