"""Tests for chunking and hashing."""

import hashlib

import pytest

from p2pshare.errors import ConfigurationError
from p2pshare.file import chunker
from p2pshare.file.chunker import (
    FileChunker,
    compute_catalog_entry,
    get_chunk_bounds,
    get_chunk_count,
    hash_bytes,
    hash_file,
)

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_hash_bytes_known_value():
    assert hash_bytes(b"") == EMPTY_SHA256
    assert hash_bytes(b"abc") == hashlib.sha256(b"abc").hexdigest()


def test_hash_is_pure():
    data = b"same bytes, same hash"
    assert hash_bytes(data) == hash_bytes(bytes(data))
    assert hash_bytes(data) != hash_bytes(data + b"!")


def test_hash_file_matches_hash_bytes(write_file):
    path = write_file('data.bin', 200_000)
    assert hash_file(path) == hash_bytes(path.read_bytes())


def test_chunk_count_and_bounds():
    assert get_chunk_count(0, 1024) == 0
    assert get_chunk_count(1, 1024) == 1
    assert get_chunk_count(1024, 1024) == 1
    assert get_chunk_count(1025, 1024) == 2

    assert get_chunk_bounds(0, 2500, 1024) == (0, 1024)
    assert get_chunk_bounds(2, 2500, 1024) == (2048, 452)
    assert get_chunk_bounds(3, 2500, 1024) == (3072, 0)


@pytest.mark.parametrize('bad', [0, -1, 1.5])
def test_invalid_chunk_size(bad):
    with pytest.raises(ConfigurationError):
        FileChunker(bad)


def test_entry_chunks_reassemble_to_file(write_file):
    path = write_file('movie.mp4', 5000)
    entry = compute_catalog_entry(path, chunk_size=1024)

    assert entry.name == 'movie.mp4'
    assert entry.size == 5000
    assert entry.file_hash == hash_file(path)
    assert [c.index for c in entry.chunks] == [0, 1, 2, 3, 4]
    assert [c.size for c in entry.chunks] == [1024, 1024, 1024, 1024, 904]
    assert [c.name for c in entry.chunks] == [f"chunk_{i}.dat" for i in range(5)]

    data = path.read_bytes()
    pieces = [data[entry.chunk_offset(c.index):entry.chunk_offset(c.index) + c.size]
              for c in entry.chunks]
    assert b"".join(pieces) == data
    for chunk, piece in zip(entry.chunks, pieces):
        assert chunk.hash == hash_bytes(piece)


def test_exact_multiple_has_no_empty_tail(write_file):
    entry = compute_catalog_entry(write_file('exact.bin', 2048), chunk_size=1024)
    assert [c.size for c in entry.chunks] == [1024, 1024]


def test_empty_file(write_file):
    entry = compute_catalog_entry(write_file('empty.txt', 0), chunk_size=1024)
    assert entry.size == 0
    assert entry.chunks == ()
    assert entry.file_hash == EMPTY_SHA256


def test_blocks_written_in_same_pass(write_file, tmp_path):
    path = write_file('doc.pdf', 2500)
    blocks_dir = tmp_path / 'doc.pdf_blocks'

    entry = compute_catalog_entry(path, chunk_size=1024, blocks_dir=blocks_dir)

    data = path.read_bytes()
    for chunk in entry.chunks:
        block = (blocks_dir / chunk.name).read_bytes()
        start, length = get_chunk_bounds(chunk.index, entry.size, 1024)
        assert block == data[start:start + length]


def test_chunk_file_and_read_chunk(write_file):
    path = write_file('a.bin', 3000)
    fc = FileChunker(1024)

    chunks = list(fc.chunk_file(path))
    assert [i for i, _, _ in chunks] == [0, 1, 2]
    assert fc.read_chunk(path, 1) == chunks[1][1]
    assert fc.read_chunk(path, 3) is None
    assert fc.read_chunk(path, -1) is None


def test_missing_file_raises_oserror(tmp_path):
    with pytest.raises(OSError):
        compute_catalog_entry(tmp_path / 'nope.bin', chunk_size=1024)


def test_unavailable_hash_algorithm(monkeypatch):
    monkeypatch.setattr(chunker, 'HASH_ALGORITHM', 'no-such-hash')
    with pytest.raises(ConfigurationError):
        hash_bytes(b"x")
