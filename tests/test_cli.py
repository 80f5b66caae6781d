"""Tests for the command-line interface."""

import json
import os

import pytest
from click.testing import CliRunner

from p2pshare.cli import cli, format_size
from p2pshare.file.metadata import chunk_name_for


@pytest.fixture
def runner(monkeypatch):
    for name in list(os.environ):
        if name.startswith('P2P_'):
            monkeypatch.delenv(name)
    return CliRunner()


def invoke(runner, shared_dir, *args):
    return runner.invoke(cli, ['--shared-dir', str(shared_dir), *args])


def test_catalog_table(runner, shared_dir, write_file):
    write_file('notes.txt', 1234)

    result = invoke(runner, shared_dir, 'catalog')

    assert result.exit_code == 0, result.output
    assert 'notes.txt' in result.output
    assert (shared_dir / 'notes.txt_blocks').is_dir()


def test_catalog_empty(runner, shared_dir):
    result = invoke(runner, shared_dir, 'catalog')
    assert result.exit_code == 0
    assert 'No shared files' in result.output


def test_catalog_json(runner, shared_dir, write_file):
    write_file('a.bin', 3000)

    result = invoke(runner, shared_dir, 'catalog', '--json')

    assert result.exit_code == 0, result.output
    document = json.loads(result.stdout)
    assert document['protocolVersion'] == '1.0'
    assert 'a.bin' in json.dumps(document)


def test_catalog_missing_directory(runner, tmp_path):
    result = invoke(runner, tmp_path / 'nope', 'catalog')
    assert result.exit_code != 0
    assert 'not found' in result.output


def test_verify(runner, shared_dir, write_file, store):
    write_file('v.bin', 5000)
    invoke(runner, shared_dir, 'catalog')

    result = invoke(runner, shared_dir, 'verify', 'v.bin')
    assert result.exit_code == 0
    assert 'verified' in result.output

    block = store.blocks_dir('v.bin') / chunk_name_for(0)
    block.write_bytes(b'tampered')

    result = invoke(runner, shared_dir, 'verify', 'v.bin')
    assert result.exit_code == 1


def test_merge(runner, shared_dir, write_file, tmp_path):
    original = write_file('m.bin', 5000)
    invoke(runner, shared_dir, 'catalog')
    output = tmp_path / 'out' / 'm.bin'

    result = invoke(runner, shared_dir, 'merge', 'm.bin', str(output))

    assert result.exit_code == 0, result.output
    assert output.read_bytes() == original.read_bytes()


def test_merge_unknown_file(runner, shared_dir, tmp_path):
    result = invoke(runner, shared_dir, 'merge', 'ghost.bin', str(tmp_path / 'g'))
    assert result.exit_code == 1
    assert 'No blocks for ghost.bin' in result.output


def test_config_save(runner, shared_dir, tmp_path):
    path = tmp_path / 'saved.json'

    result = runner.invoke(cli, ['--shared-dir', str(shared_dir), '--port', '9300',
                                 'config', '--save', str(path)])

    assert result.exit_code == 0, result.output
    saved = json.loads(path.read_text())
    assert saved['transfer_port'] == 9300
    assert saved['shared_dir'] == str(shared_dir)


def test_invalid_config_file(runner, shared_dir, tmp_path):
    path = tmp_path / 'bad.json'
    path.write_text(json.dumps({'chunk_size': -5}))

    result = runner.invoke(cli, ['--config', str(path), 'config'])

    assert result.exit_code != 0
    assert 'chunk_size' in result.output


def test_bad_peer_address(runner, shared_dir):
    result = invoke(runner, shared_dir, 'fetch', 'x.bin', '-p', 'no-port')
    assert result.exit_code == 2
    assert 'Invalid peer address' in result.output


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
