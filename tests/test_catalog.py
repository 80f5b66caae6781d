"""Tests for catalog building, (de)serialization and reconciliation."""

import json

import pytest

from p2pshare.errors import ConfigurationError, MalformedDataError, ProtocolVersionError
from p2pshare.file import (
    FileCatalogEntry,
    build_catalog,
    deserialize_catalog,
    deserialize_entry,
    diff,
    has_all_keys,
    serialize_catalog,
    serialize_entry,
)
from p2pshare.file.catalog import catalog_to_json
from p2pshare.file.chunker import compute_catalog_entry

HASH_A = "a" * 64
HASH_B = "b" * 64


def entry(name, file_hash=HASH_A, size=0):
    return FileCatalogEntry(name=name, size=size, file_hash=file_hash, chunk_size=1024)


# === Building ===

def test_build_lists_regular_files_only(shared_dir, write_file):
    write_file('a.txt', 10)
    write_file('b.bin', 3000)
    write_file('.hidden', 10)
    (shared_dir / 'subdir').mkdir()
    (shared_dir / 'subdir' / 'nested.txt').write_text('x')

    catalog = build_catalog(shared_dir, chunk_size=1024)

    assert set(catalog) == {'a.txt', 'b.bin'}
    assert catalog['b.bin'].chunk_count == 3


def test_build_missing_directory(tmp_path):
    with pytest.raises(ConfigurationError):
        build_catalog(tmp_path / 'missing')


def test_rebuild_keeps_unchanged_entries(shared_dir, write_file):
    write_file('keep.txt', 100)
    write_file('change.txt', 100, seed=1)
    first = build_catalog(shared_dir, chunk_size=1024)

    write_file('change.txt', 200, seed=2)
    second = build_catalog(shared_dir, chunk_size=1024, previous=first)

    assert second['keep.txt'] is first['keep.txt']
    assert second['keep.txt'].created_at == first['keep.txt'].created_at
    assert second['change.txt'] != first['change.txt']
    assert second['change.txt'].size == 200


def test_rebuild_drops_deleted_files(shared_dir, write_file):
    path = write_file('gone.txt', 10)
    first = build_catalog(shared_dir, chunk_size=1024)
    path.unlink()

    assert 'gone.txt' not in build_catalog(shared_dir, chunk_size=1024, previous=first)


def test_catalog_is_read_only(shared_dir, write_file):
    write_file('a.txt', 10)
    catalog = build_catalog(shared_dir)
    with pytest.raises(TypeError):
        catalog['b.txt'] = catalog['a.txt']


def test_build_with_store_writes_and_removes_blocks(shared_dir, write_file, store):
    path = write_file('video.mp4', 2500)
    catalog = build_catalog(shared_dir, chunk_size=1024, store=store)

    assert store.has_blocks(catalog['video.mp4'])
    assert store.metadata_path('video.mp4').is_file()
    # block directories never show up as catalog entries
    assert set(catalog) == {'video.mp4'}

    path.unlink()
    build_catalog(shared_dir, chunk_size=1024, previous=catalog, store=store)
    assert not store.blocks_dir('video.mp4').exists()


def test_manager_rebuild_reports_changes(shared_dir, write_file, catalog_manager):
    write_file('one.txt', 10)
    assert catalog_manager.rebuild() == {'one.txt'}

    before = catalog_manager.snapshot
    assert catalog_manager.rebuild() == set()
    assert catalog_manager.snapshot['one.txt'] is before['one.txt']

    write_file('two.txt', 10)
    (shared_dir / 'one.txt').unlink()
    assert catalog_manager.rebuild() == {'one.txt', 'two.txt'}

    # the old snapshot is untouched by the rebuild
    assert set(before) == {'one.txt'}
    assert set(catalog_manager.snapshot) == {'two.txt'}
    assert catalog_manager.rebuild_count == 3


# === Reconciliation ===

def test_diff_reflexive_and_subset():
    local = {'a': entry('a'), 'b': entry('b')}
    remote = {'a': entry('a', HASH_B), 'c': entry('c')}

    assert diff(local, local) == set()
    assert diff(remote, remote) == set()
    missing = diff(local, remote)
    assert missing == {'a', 'c'}
    assert missing <= set(remote)


def test_has_all_keys_ignores_hash():
    local = {'a': entry('a', HASH_A)}
    remote = {'a': entry('a', HASH_B)}

    assert has_all_keys(local, remote)
    assert diff(local, remote) == {'a'}
    assert not has_all_keys({}, remote)
    assert has_all_keys(local, {})


def test_entry_equality_ignores_timestamp():
    first = FileCatalogEntry('x', 1, HASH_A, 1024, created_at=1.0)
    second = FileCatalogEntry('x', 1, HASH_A, 1024, created_at=2.0)
    assert first == second
    assert hash(first) == hash(second)
    assert first != FileCatalogEntry('x', 1, HASH_B, 1024)


# === Serialization ===

def test_catalog_document_round_trip(shared_dir, write_file):
    write_file('a.txt', 3000)
    write_file('b.txt', 0)
    catalog = build_catalog(shared_dir, chunk_size=1024)

    document = serialize_catalog(catalog)
    assert document['protocolVersion'] == "1.0"
    assert [f['fileName'] for f in document['files']] == ['a.txt', 'b.txt']

    parsed = deserialize_catalog(catalog_to_json(catalog))
    assert dict(parsed) == dict(catalog)
    assert parsed['a.txt'].chunks == catalog['a.txt'].chunks


def test_metadata_document_shape(write_file):
    e = compute_catalog_entry(write_file('f.bin', 1500), chunk_size=1024)
    doc = serialize_entry(e)

    assert set(doc) == {'fileName', 'fileHash', 'totalSize', 'chunkSize', 'chunks', 'timestamp'}
    assert doc['chunks'][1] == {
        'index': 1,
        'chunkName': 'chunk_1.dat',
        'chunkHash': e.chunks[1].hash,
        'chunkSize': 476,
    }
    assert deserialize_entry(json.dumps(doc)) == e


def test_unknown_fields_ignored(write_file):
    e = compute_catalog_entry(write_file('f.bin', 10), chunk_size=1024)
    doc = serialize_entry(e)
    doc['owner'] = 'somebody'
    doc['chunks'][0]['extra'] = True

    document = {'protocolVersion': '1.0', 'files': [doc], 'generator': 'test'}
    assert deserialize_catalog(document)['f.bin'] == e


@pytest.mark.parametrize('version', ['2.0', '0.9', 1.0, None])
def test_unsupported_version_rejected(version):
    with pytest.raises(ProtocolVersionError):
        deserialize_catalog({'protocolVersion': version, 'files': []})


@pytest.mark.parametrize('document', [
    b'not json',
    '[]',
    {'files': []},
    {'protocolVersion': '1.0'},
    {'protocolVersion': '1.0', 'files': {}},
    {'protocolVersion': '1.0', 'files': [{'fileName': 'x'}]},
])
def test_malformed_catalog_rejected(document):
    with pytest.raises(MalformedDataError):
        deserialize_catalog(document)


def _doc(**overrides):
    doc = {
        'fileName': 'f.bin',
        'fileHash': HASH_A,
        'totalSize': 1500,
        'chunkSize': 1024,
        'chunks': [
            {'index': 0, 'chunkName': 'chunk_0.dat', 'chunkHash': HASH_A, 'chunkSize': 1024},
            {'index': 1, 'chunkName': 'chunk_1.dat', 'chunkHash': HASH_B, 'chunkSize': 476},
        ],
        'timestamp': 1.0,
    }
    doc.update(overrides)
    return doc


def test_valid_metadata_document():
    assert deserialize_entry(_doc()).chunk_count == 2


@pytest.mark.parametrize('overrides', [
    {'fileHash': 'XYZ'},
    {'fileHash': HASH_A.upper()},
    {'totalSize': 1499},
    {'chunkSize': 0},
    {'fileName': ''},
    {'chunks': [
        {'index': 1, 'chunkName': 'chunk_1.dat', 'chunkHash': HASH_A, 'chunkSize': 1024},
        {'index': 0, 'chunkName': 'chunk_0.dat', 'chunkHash': HASH_B, 'chunkSize': 476},
    ]},
    {'chunks': [
        {'index': 0, 'chunkName': 'chunk_0.dat', 'chunkHash': HASH_A, 'chunkSize': 1500},
    ]},
])
def test_malformed_metadata_rejected(overrides):
    with pytest.raises(MalformedDataError):
        deserialize_entry(_doc(**overrides))


def test_duplicate_files_rejected():
    with pytest.raises(MalformedDataError):
        deserialize_catalog({'protocolVersion': '1.0', 'files': [_doc(), _doc()]})
