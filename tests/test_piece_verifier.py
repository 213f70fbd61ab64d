import hashlib

import pytest

from conftest import make_torrent
from errors import HashMismatch
from piece_verifier import BufferPool, PieceAssembler, PieceWork, verify_file, verify_piece


def work_for(data: bytes, index: int = 0) -> PieceWork:
    return PieceWork(index, hashlib.sha1(data).digest(), len(data))


def test_assembler_splits_into_blocks():
    assembler = PieceAssembler(work_for(b'x' * 10), bytearray(16), block_size=4)
    requests = []
    while assembler.has_next_request():
        requests.append(assembler.next_request())

    assert requests == [(0, 4), (4, 4), (8, 2)]
    assert assembler.backlog == 3
    assert not assembler.done


def test_assembler_accepts_blocks_out_of_order():
    data = b'0123456789'
    assembler = PieceAssembler(work_for(data), bytearray(16), block_size=4)
    while assembler.has_next_request():
        assembler.next_request()

    assert assembler.add_block(8, data[8:])
    assert assembler.add_block(0, data[:4])
    assert assembler.add_block(4, data[4:8])
    assert assembler.done
    assert assembler.backlog == 0
    assert bytes(assembler.piece()) == data


def test_assembler_rejects_unrequested_blocks():
    assembler = PieceAssembler(work_for(b'x' * 8), bytearray(8), block_size=4)
    assembler.next_request()

    assert not assembler.add_block(4, b'xxxx')   # never requested
    assert not assembler.add_block(0, b'xx')     # wrong length
    assert assembler.add_block(0, b'xxxx')
    assert not assembler.add_block(0, b'xxxx')   # duplicate
    assert assembler.downloaded == 4


def test_assembler_needs_large_enough_buffer():
    with pytest.raises(ValueError):
        PieceAssembler(work_for(b'x' * 8), bytearray(4))


def test_piece_view_is_trimmed_to_piece_length():
    assembler = PieceAssembler(work_for(b'ab'), bytearray(b'..........'), block_size=4)
    assembler.next_request()
    assembler.add_block(0, b'ab')
    assert bytes(assembler.piece()) == b'ab'


def test_buffer_pool_reuses_buffers():
    pool = BufferPool(8)
    first = pool.acquire()
    pool.release(first)
    assert pool.idle == 1
    assert pool.acquire() is first
    assert pool.idle == 0


def test_buffer_pool_drops_foreign_buffers():
    pool = BufferPool(8)
    pool.release(bytearray(4))
    assert pool.idle == 0


def test_verify_piece():
    work = work_for(b'hello')
    verify_piece(work, b'hello')
    verify_piece(work, memoryview(bytearray(b'hello')))

    with pytest.raises(HashMismatch) as excinfo:
        verify_piece(work, b'jello')
    assert excinfo.value.index == 0


def test_verify_file(tmp_path):
    content = b'abcdefghij'
    torrent = make_torrent(content, 4)
    path = tmp_path / "out.bin"

    path.write_bytes(content)
    assert verify_file(str(path), torrent) == []

    path.write_bytes(b'abcdXfghij')
    assert verify_file(str(path), torrent) == [1]

    path.write_bytes(content[:6])
    assert verify_file(str(path), torrent) == [1, 2]

    path.write_bytes(content + b'extra')
    assert verify_file(str(path), torrent) == [2]
