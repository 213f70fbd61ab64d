import asyncio
import struct
from typing import NamedTuple, Optional

from config import Config
from errors import HandshakeError, MalformedMessage

# BitTorrent protocol constants
PROTOCOL_STRING = b'BitTorrent protocol'
PROTOCOL_STRING_LEN = len(PROTOCOL_STRING)
HANDSHAKE_LENGTH = PROTOCOL_STRING_LEN + 1 + 8 + 20 + 20  # pstrlen + pstr + reserved + info_hash + peer_id

# BitTorrent message IDs (after handshake)
MSG_CHOKE = 0
MSG_UNCHOKE = 1
MSG_INTERESTED = 2
MSG_NOT_INTERESTED = 3
MSG_HAVE = 4
MSG_BITFIELD = 5
MSG_REQUEST = 6
MSG_PIECE = 7
MSG_CANCEL = 8

MESSAGE_NAMES = {
    MSG_CHOKE: 'choke',
    MSG_UNCHOKE: 'unchoke',
    MSG_INTERESTED: 'interested',
    MSG_NOT_INTERESTED: 'not-interested',
    MSG_HAVE: 'have',
    MSG_BITFIELD: 'bitfield',
    MSG_REQUEST: 'request',
    MSG_PIECE: 'piece',
    MSG_CANCEL: 'cancel',
}

# length prefix value (id byte included) for messages with a fixed shape
FIXED_LENGTHS = {
    MSG_CHOKE: 1,
    MSG_UNCHOKE: 1,
    MSG_INTERESTED: 1,
    MSG_NOT_INTERESTED: 1,
    MSG_HAVE: 5,
    MSG_REQUEST: 13,
    MSG_CANCEL: 13,
}

KEEP_ALIVE = b'\x00\x00\x00\x00'


class Message(NamedTuple):
    id: int
    payload: bytes = b''

    @property
    def name(self) -> str:
        return MESSAGE_NAMES.get(self.id, f'unknown({self.id})')

    def serialize(self) -> bytes:
        """Length prefix + ID + payload."""
        return (1 + len(self.payload)).to_bytes(4, byteorder='big') + bytes([self.id]) + bytes(self.payload)


class BlockRequest(NamedTuple):
    index: int
    begin: int
    length: int


class Block(NamedTuple):
    index: int
    begin: int
    data: bytes


# --- Handshake ---

def build_handshake(info_hash: bytes, peer_id: bytes) -> bytes:
    """
    Build the 68-byte handshake: <pstrlen><pstr><reserved><info_hash><peer_id>

    Args:
        info_hash (bytes): 20-byte SHA1 of the torrent's info dictionary.
        peer_id (bytes): 20-byte id of this client.
    """
    if len(info_hash) != 20:
        raise ValueError('info_hash must be a 20-byte bytes object.')
    if len(peer_id) != 20:
        raise ValueError('peer_id must be a 20-byte bytes object.')

    return (
        bytes([PROTOCOL_STRING_LEN]) +  # pstrlen
        PROTOCOL_STRING +               # pstr
        b'\x00' * 8 +                   # reserved
        info_hash +                     # info_hash
        peer_id                         # peer_id
    )


def parse_handshake(data: bytes) -> tuple[bytes, bytes]:
    """
    Split a received handshake into (info_hash, peer_id).

    Raises:
        HandshakeError: wrong length or protocol string.
    """
    if len(data) != HANDSHAKE_LENGTH:
        raise HandshakeError(f"handshake is {len(data)} bytes, expected {HANDSHAKE_LENGTH}")

    pstrlen = data[0]
    if pstrlen != PROTOCOL_STRING_LEN:
        raise HandshakeError(f"unexpected protocol string length ({pstrlen} instead of {PROTOCOL_STRING_LEN})")
    if data[1:1 + pstrlen] != PROTOCOL_STRING:
        raise HandshakeError("incorrect protocol string")

    info_hash = data[1 + pstrlen + 8 : 1 + pstrlen + 8 + 20]
    peer_id = data[1 + pstrlen + 8 + 20 : HANDSHAKE_LENGTH]
    return info_hash, peer_id


# --- Message builders ---

def format_have(index: int) -> Message:
    return Message(MSG_HAVE, index.to_bytes(4, byteorder='big'))


def format_bitfield(bitfield: bytes) -> Message:
    return Message(MSG_BITFIELD, bytes(bitfield))


def format_request(index: int, begin: int, length: int) -> Message:
    return Message(MSG_REQUEST, struct.pack('>III', index, begin, length))


def format_cancel(index: int, begin: int, length: int) -> Message:
    return Message(MSG_CANCEL, struct.pack('>III', index, begin, length))


def format_piece(index: int, begin: int, block: bytes) -> Message:
    return Message(MSG_PIECE, struct.pack('>II', index, begin) + bytes(block))


# --- Message parsers ---

def parse_have(msg: Message) -> int:
    if msg.id != MSG_HAVE or len(msg.payload) != 4:
        raise MalformedMessage(f"expected have with 4-byte payload, got {msg.name} ({len(msg.payload)} bytes)")
    return int.from_bytes(msg.payload, byteorder='big')


def parse_request(msg: Message) -> BlockRequest:
    """Parse a request or cancel payload (both are index, begin, length)."""
    if msg.id not in (MSG_REQUEST, MSG_CANCEL) or len(msg.payload) != 12:
        raise MalformedMessage(f"expected request with 12-byte payload, got {msg.name} ({len(msg.payload)} bytes)")
    return BlockRequest(*struct.unpack('>III', msg.payload))


def parse_piece(msg: Message) -> Block:
    if msg.id != MSG_PIECE or len(msg.payload) < 8:
        raise MalformedMessage(f"expected piece with at least 8 payload bytes, got {msg.name} ({len(msg.payload)} bytes)")
    index, begin = struct.unpack('>II', msg.payload[:8])
    return Block(index, begin, msg.payload[8:])


# --- Framing ---

def check_length(msg_id: int, length: int):
    """
    Make sure a declared frame length (id byte included) fits the message id.

    Raises:
        MalformedMessage: the length exceeds Config.MAX_MESSAGE_LENGTH or does
            not match the payload shape of msg_id.
    """
    if length > Config.MAX_MESSAGE_LENGTH:
        raise MalformedMessage(f"declared length {length} exceeds {Config.MAX_MESSAGE_LENGTH}")

    expected = FIXED_LENGTHS.get(msg_id)
    if expected is not None and length != expected:
        raise MalformedMessage(f"{MESSAGE_NAMES[msg_id]} must be {expected} bytes long, declared {length}")

    if msg_id == MSG_PIECE and not 9 <= length <= 9 + Config.MAX_REQUEST_LENGTH:
        raise MalformedMessage(f"piece message with declared length {length}")

    if msg_id == MSG_BITFIELD and length < 1:
        raise MalformedMessage("empty bitfield message")


def decode(data: bytes) -> Optional[Message]:
    """
    Decode exactly one framed message. Returns None for a keep-alive.

    Raises:
        MalformedMessage: truncated frame, trailing bytes or a length that
            does not fit the message id.
    """
    if len(data) < 4:
        raise MalformedMessage(f"frame too short for a length prefix ({len(data)} bytes)")

    length = int.from_bytes(data[:4], byteorder='big')
    if length == 0:
        if len(data) != 4:
            raise MalformedMessage("trailing bytes after keep-alive")
        return None

    if len(data) < 5:
        raise MalformedMessage("frame is missing its message id")

    msg_id = data[4]
    check_length(msg_id, length)

    if len(data) != 4 + length:
        raise MalformedMessage(f"declared length {length} but frame carries {len(data) - 4} bytes")

    return Message(msg_id, bytes(data[5:]))


async def read_message(reader: asyncio.StreamReader, timeout: Optional[float] = None) -> Optional[Message]:
    """
    Read one message from the stream. Returns None for a keep-alive.

    The timeout only covers the wait for the length prefix, which consumes
    nothing from the stream when it expires. Once a frame has started, the
    rest of it is read under Config.READ_TIMEOUT.

    Raises:
        asyncio.TimeoutError: no frame started within timeout.
        MalformedMessage: length/id inconsistency (checked before the payload is read).
        asyncio.IncompleteReadError, OSError: the peer went away.
    """
    length_prefix = await asyncio.wait_for(reader.readexactly(4), timeout=timeout)
    length = int.from_bytes(length_prefix, byteorder='big')
    if length == 0:
        return None

    try:
        msg_id = (await asyncio.wait_for(reader.readexactly(1), timeout=Config.READ_TIMEOUT))[0]
        check_length(msg_id, length)
        payload = b''
        if length > 1:
            payload = await asyncio.wait_for(reader.readexactly(length - 1), timeout=Config.READ_TIMEOUT)
    except asyncio.TimeoutError:
        # the stream is now mid-frame, it cannot be resynchronised
        raise MalformedMessage(f"frame of {length} bytes stalled") from None

    return Message(msg_id, payload)
