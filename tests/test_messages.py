import asyncio
import struct

import pytest

from errors import HandshakeError, MalformedMessage
from messages import (
    HANDSHAKE_LENGTH,
    KEEP_ALIVE,
    MSG_BITFIELD,
    MSG_CHOKE,
    MSG_HAVE,
    MSG_INTERESTED,
    MSG_PIECE,
    MSG_REQUEST,
    Block,
    BlockRequest,
    Message,
    build_handshake,
    check_length,
    decode,
    format_bitfield,
    format_cancel,
    format_have,
    format_piece,
    format_request,
    parse_handshake,
    parse_have,
    parse_piece,
    parse_request,
    read_message,
)

INFO_HASH = bytes(range(20))
PEER_ID = b'-PC0001-abcdefghijkl'


def stream_of(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


# --- Handshake ---

def test_handshake_layout():
    handshake = build_handshake(INFO_HASH, PEER_ID)
    assert len(handshake) == HANDSHAKE_LENGTH == 68
    assert handshake[0] == 19
    assert handshake[1:20] == b'BitTorrent protocol'
    assert handshake[20:28] == b'\x00' * 8
    assert handshake[28:48] == INFO_HASH
    assert handshake[48:68] == PEER_ID


def test_parse_handshake_returns_hash_and_peer_id():
    assert parse_handshake(build_handshake(INFO_HASH, PEER_ID)) == (INFO_HASH, PEER_ID)


def test_parse_handshake_ignores_reserved_bits():
    handshake = bytearray(build_handshake(INFO_HASH, PEER_ID))
    handshake[20:28] = b'\x00\x00\x00\x00\x00\x10\x00\x05'
    assert parse_handshake(bytes(handshake)) == (INFO_HASH, PEER_ID)


def test_parse_handshake_rejects_other_protocol():
    handshake = bytearray(build_handshake(INFO_HASH, PEER_ID))
    handshake[1:20] = b'BitTorrent protocoX'
    with pytest.raises(HandshakeError):
        parse_handshake(bytes(handshake))


def test_parse_handshake_rejects_bad_length_byte():
    handshake = bytearray(build_handshake(INFO_HASH, PEER_ID))
    handshake[0] = 18
    with pytest.raises(HandshakeError):
        parse_handshake(bytes(handshake))


def test_parse_handshake_rejects_short_input():
    with pytest.raises(HandshakeError):
        parse_handshake(build_handshake(INFO_HASH, PEER_ID)[:67])


def test_build_handshake_requires_20_byte_fields():
    with pytest.raises(ValueError):
        build_handshake(INFO_HASH[:19], PEER_ID)
    with pytest.raises(ValueError):
        build_handshake(INFO_HASH, PEER_ID + b'x')


# --- Serialisation ---

def test_serialize_fixed_messages():
    assert Message(MSG_CHOKE).serialize() == b'\x00\x00\x00\x01\x00'
    assert Message(MSG_INTERESTED).serialize() == b'\x00\x00\x00\x01\x02'
    assert format_have(258).serialize() == b'\x00\x00\x00\x05\x04\x00\x00\x01\x02'


def test_serialize_request_and_cancel():
    expected_payload = struct.pack('>III', 1, 16384, 16384)
    assert format_request(1, 16384, 16384).serialize() == b'\x00\x00\x00\x0d\x06' + expected_payload
    assert format_cancel(1, 16384, 16384).serialize() == b'\x00\x00\x00\x0d\x08' + expected_payload


def test_serialize_piece_and_bitfield():
    assert format_piece(0, 4, b'abcd').serialize() == (
        b'\x00\x00\x00\x0d\x07' + b'\x00\x00\x00\x00' + b'\x00\x00\x00\x04' + b'abcd')
    assert format_bitfield(b'\xa0').serialize() == b'\x00\x00\x00\x02\x05\xa0'


def test_message_name():
    assert Message(MSG_REQUEST).name == 'request'
    assert Message(42).name == 'unknown(42)'


# --- Payload parsers ---

def test_payload_parsers():
    assert parse_have(format_have(7)) == 7
    assert parse_request(format_request(3, 0, 16384)) == BlockRequest(3, 0, 16384)
    assert parse_request(format_cancel(3, 0, 16384)) == BlockRequest(3, 0, 16384)
    assert parse_piece(format_piece(2, 32, b'xyz')) == Block(2, 32, b'xyz')


def test_payload_parsers_reject_wrong_shape():
    with pytest.raises(MalformedMessage):
        parse_have(Message(MSG_HAVE, b'\x00\x01'))
    with pytest.raises(MalformedMessage):
        parse_request(Message(MSG_REQUEST, b'\x00' * 8))
    with pytest.raises(MalformedMessage):
        parse_piece(Message(MSG_PIECE, b'\x00' * 7))
    with pytest.raises(MalformedMessage):
        parse_request(format_have(1))


# --- decode ---

def test_decode_keep_alive():
    assert decode(KEEP_ALIVE) is None


def test_decode_regular_message():
    assert decode(format_request(1, 2, 3).serialize()) == format_request(1, 2, 3)
    assert decode(Message(MSG_CHOKE).serialize()) == Message(MSG_CHOKE)


def test_decode_rejects_request_declaring_1000_bytes():
    frame = (1000).to_bytes(4, 'big') + bytes([MSG_REQUEST]) + b'\x00' * 10
    with pytest.raises(MalformedMessage):
        decode(frame)


def test_decode_rejects_truncated_and_trailing_frames():
    with pytest.raises(MalformedMessage):
        decode(b'\x00\x00\x00')
    with pytest.raises(MalformedMessage):
        decode(b'\x00\x00\x00\x01')
    with pytest.raises(MalformedMessage):
        decode(KEEP_ALIVE + b'\x00')
    with pytest.raises(MalformedMessage):
        decode(format_piece(0, 0, b'abcd').serialize()[:-1])
    with pytest.raises(MalformedMessage):
        decode(Message(MSG_CHOKE).serialize() + b'\x00')


@pytest.mark.parametrize("msg_id, length", [
    (MSG_CHOKE, 2),
    (MSG_HAVE, 4),
    (MSG_REQUEST, 12),
    (MSG_PIECE, 8),
    (MSG_BITFIELD, 2 ** 20 + 1),
])
def test_check_length_rejects(msg_id, length):
    with pytest.raises(MalformedMessage):
        check_length(msg_id, length)


@pytest.mark.parametrize("msg_id, length", [
    (MSG_CHOKE, 1),
    (MSG_HAVE, 5),
    (MSG_REQUEST, 13),
    (MSG_PIECE, 9 + 16384),
    (MSG_BITFIELD, 2),
    (20, 3),  # unknown ids are let through
])
def test_check_length_accepts(msg_id, length):
    check_length(msg_id, length)


# --- read_message ---

@pytest.mark.asyncio
async def test_read_message_sequence():
    data = KEEP_ALIVE + format_have(5).serialize() + format_piece(1, 0, b'data').serialize()
    reader = stream_of(data)

    assert await read_message(reader) is None
    assert await read_message(reader) == format_have(5)
    assert await read_message(reader) == format_piece(1, 0, b'data')
    with pytest.raises(asyncio.IncompleteReadError):
        await read_message(reader)


@pytest.mark.asyncio
async def test_read_message_rejects_length_before_reading_payload():
    # the stream never ends, so reading the 999 payload bytes would block
    reader = stream_of((1000).to_bytes(4, 'big') + bytes([MSG_REQUEST]) + b'\x00' * 10, eof=False)
    with pytest.raises(MalformedMessage):
        await asyncio.wait_for(read_message(reader), timeout=1)


@pytest.mark.asyncio
async def test_read_message_timeout_consumes_nothing():
    reader = stream_of(b'', eof=False)
    with pytest.raises(asyncio.TimeoutError):
        await read_message(reader, timeout=0.05)

    reader.feed_data(Message(MSG_CHOKE).serialize())
    assert await read_message(reader, timeout=1) == Message(MSG_CHOKE)


@pytest.mark.asyncio
async def test_read_message_stalled_frame_is_malformed(monkeypatch):
    from config import Config
    monkeypatch.setattr(Config, "READ_TIMEOUT", 0.05)

    reader = stream_of(format_piece(0, 0, b'abcd').serialize()[:10], eof=False)
    with pytest.raises(MalformedMessage):
        await read_message(reader)
