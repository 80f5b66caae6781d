"""Tests for configuration loading."""

import json
import os
from pathlib import Path

import pytest

from p2pshare.config import Config, load_config
from p2pshare.errors import ConfigurationError
from p2pshare.transfer.peers import PeerAddress


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without P2P_* variables."""
    for name in list(os.environ):
        if name.startswith('P2P_'):
            monkeypatch.delenv(name)


def test_defaults():
    config = Config().validate()

    assert config.transfer_port == 8080
    assert config.chunk_size == 2 * 1024 * 1024
    assert config.rate_limit == 1000.0
    assert config.server_workers >= 2
    assert config.multicast_group == '239.255.10.1'
    assert config.multicast_port == 5000
    assert config.max_datagram_size == 1472
    assert config.broadcast_assembly_timeout == 30.0
    assert config.sync_fast_path is True
    assert config.peers == []


def test_downloads_falls_back_to_shared_dir(tmp_path):
    config = Config(shared_dir=tmp_path / 'shared')
    assert config.downloads == tmp_path / 'shared'

    config.download_dir = tmp_path / 'dl'
    assert config.downloads == tmp_path / 'dl'


def test_from_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({
        'transfer_port': 9000,
        'shared_dir': str(tmp_path / 'shared'),
        'chunk_size': 4096,
        'peers': ['10.0.0.1:9000'],
        'sync_fast_path': False,
    }))

    config = Config.from_file(path)

    assert config.transfer_port == 9000
    assert config.shared_dir == tmp_path / 'shared'
    assert config.chunk_size == 4096
    assert config.sync_fast_path is False
    assert config.peer_addresses() == [PeerAddress('10.0.0.1', 9000)]
    # untouched values keep their defaults
    assert config.rate_limit == 1000.0


def test_from_missing_file_gives_defaults(tmp_path):
    assert Config.from_file(tmp_path / 'nope.json') == Config()


@pytest.mark.parametrize('content', ['{not json', '[1, 2, 3]'])
def test_from_file_rejects_bad_documents(tmp_path, content):
    path = tmp_path / 'config.json'
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        Config.from_file(path)


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'transfer_port': 9000, 'chunk_size': 4096}))

    monkeypatch.setenv('P2P_TRANSFER_PORT', '9100')
    monkeypatch.setenv('P2P_SYNC_FAST_PATH', 'no')
    monkeypatch.setenv('P2P_RATE_LIMIT', '250')

    config = load_config(path)

    assert config.transfer_port == 9100
    assert config.chunk_size == 4096
    assert config.sync_fast_path is False
    assert config.rate_limit == 250.0


def test_env_peers_are_additive(tmp_path, monkeypatch):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'peers': ['10.0.0.1:8080']}))
    monkeypatch.setenv('P2P_PEERS', '10.0.0.2:8080, 10.0.0.3:8081,')

    config = load_config(path)

    assert config.peers == ['10.0.0.1:8080', '10.0.0.2:8080', '10.0.0.3:8081']


def test_env_bad_conversion(monkeypatch):
    monkeypatch.setenv('P2P_CHUNK_SIZE', 'lots')
    with pytest.raises(ConfigurationError, match='P2P_CHUNK_SIZE'):
        Config.from_env()


@pytest.mark.parametrize('overrides', [
    {'transfer_port': 0},
    {'multicast_port': 70000},
    {'chunk_size': 0},
    {'server_workers': -1},
    {'max_chunk_attempts': 0},
    {'rate_limit': 0},
    {'chunk_timeout': -1.0},
    {'broadcast_send_delay': -0.5},
    {'broadcast_assembly_timeout': 0},
    {'log_level': 'LOUD'},
    {'peers': ['no-port']},
    {'peers': [8080]},
    {'transfer_port': '8080'},
    {'max_concurrent_downloads': True},
])
def test_validate_rejects(overrides):
    config = Config(**overrides)
    with pytest.raises(ConfigurationError):
        config.validate()


def test_save_and_load(tmp_path):
    original = Config(
        transfer_port=9200,
        shared_dir=tmp_path / 'shared',
        download_dir=tmp_path / 'dl',
        chunk_size=8192,
        peers=['10.0.0.7:9200'],
        receive_broadcasts=True,
    )
    path = tmp_path / 'saved.json'
    original.save(path)

    loaded = load_config(path)

    assert loaded.to_dict() == original.to_dict()
    assert isinstance(loaded.shared_dir, Path)
