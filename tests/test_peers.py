"""Tests for peer addresses and selection."""

import random

import pytest

from p2pshare.errors import ConfigurationError
from p2pshare.transfer.peers import PeerAddress, RandomPeerSelector, parse_peers, shuffled


def test_parse_address():
    peer = PeerAddress.parse('192.168.1.10:8080')
    assert peer == PeerAddress('192.168.1.10', 8080)
    assert peer.catalog_port == 8081
    assert peer.base_url == 'http://192.168.1.10:8080'
    assert str(peer) == '192.168.1.10:8080'


@pytest.mark.parametrize('value', ['nohost', ':8080', 'host:', 'host:abc', 'host:0', 'host:70000'])
def test_parse_invalid(value):
    with pytest.raises(ConfigurationError):
        PeerAddress.parse(value)


def test_parse_peers_skips_blanks():
    assert parse_peers(['a:1', ' ', '', 'b:2']) == [PeerAddress('a', 1), PeerAddress('b', 2)]


def test_shuffled_is_a_permutation():
    peers = [PeerAddress(f'h{i}', 8080) for i in range(10)]
    result = shuffled(peers, random.Random(1))

    assert sorted(result, key=str) == sorted(peers, key=str)
    assert peers == [PeerAddress(f'h{i}', 8080) for i in range(10)]


def test_random_selector_covers_pool():
    peers = [PeerAddress('a', 1), PeerAddress('b', 1)]
    selector = RandomPeerSelector(random.Random(0))

    picks = {selector.select(peers, i, 1) for i in range(50)}
    assert picks == set(peers)


def test_random_selector_empty_pool():
    with pytest.raises(ValueError):
        RandomPeerSelector().select([], 0, 1)
