"""Shared pytest fixtures for all tests."""

import random
from pathlib import Path

import httpx
import pytest

from p2pshare.errors import NetworkError
from p2pshare.file import BlockStore, CatalogManager, build_catalog
from p2pshare.file.chunker import hash_bytes
from p2pshare.file.metadata import BLOCKS_SUFFIX, chunk_name_for
from p2pshare.transfer.peers import PeerAddress
from p2pshare.transfer.server import HASH_HEADER


def make_bytes(size: int, seed: int = 0) -> bytes:
    """Deterministic pseudo-random content."""
    return random.Random(seed).randbytes(size)


@pytest.fixture
def make_data():
    """Factory for deterministic content: (size, seed=0) -> bytes."""
    return make_bytes


@pytest.fixture
def shared_dir(tmp_path):
    """
    Create an empty shared directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to the shared directory
    """
    path = tmp_path / 'shared'
    path.mkdir()
    return path


@pytest.fixture
def write_file(shared_dir):
    """
    Factory writing deterministic content into the shared directory.

    Returns:
        Callable (name, size, seed=0) -> Path
    """
    def _write(name: str, size: int, seed: int = 0) -> Path:
        path = shared_dir / name
        path.write_bytes(make_bytes(size, seed))
        return path
    return _write


@pytest.fixture
def store(shared_dir):
    """Block store rooted at the shared directory."""
    return BlockStore(shared_dir)


@pytest.fixture
def catalog_manager(shared_dir, store):
    """
    Catalog manager with a small chunk size so tests stay fast.

    Returns:
        CatalogManager using 1 KiB chunks
    """
    return CatalogManager(shared_dir, chunk_size=1024, store=store)


# === Fake peers for transfer tests ===


class FakePeer:
    """
    Serves a BlockStore over httpx.MockTransport the way a chunk server would.

    Args:
        store: The peer's blocks
        corrupt: Chunk indices whose body is flipped (header stays honest)
        status: Answer every chunk request with this status instead
        down: Refuse all connections
    """

    def __init__(self, store: BlockStore, corrupt=(), status=None, down=False):
        self.store = store
        self.corrupt = {chunk_name_for(i) for i in corrupt}
        self.status = status
        self.down = down
        self.chunk_requests = 0

    def respond(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == '/_metadata.json':
            entry = self.store.read_metadata(request.url.params.get('file', ''))
            if entry is None:
                return httpx.Response(404)
            return httpx.Response(200, content=entry.to_json())

        self.chunk_requests += 1
        if self.status is not None:
            return httpx.Response(self.status)

        blocks, _, chunk_name = path.lstrip('/').partition('/')
        block = self.store.blocks_dir(blocks[:-len(BLOCKS_SUFFIX)]) / chunk_name
        if not block.is_file():
            return httpx.Response(404)

        data = block.read_bytes()
        digest = hash_bytes(data)
        if chunk_name in self.corrupt:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        return httpx.Response(200, content=data, headers={HASH_HEADER: digest})


class FakeNetwork:
    """A set of FakePeers reachable through one MockTransport."""

    def __init__(self):
        self.peers = {}

    def add(self, address: PeerAddress, peer: FakePeer):
        self.peers[(address.host, address.port)] = peer

    def peer(self, address: PeerAddress) -> FakePeer:
        return self.peers[(address.host, address.port)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        peer = self.peers.get((request.url.host, request.url.port))
        if peer is None or peer.down:
            raise httpx.ConnectError("Connection refused", request=request)
        return peer.respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def fetch_catalog(self, address: PeerAddress, timeout: float):
        """Stand-in for the catalog handshake."""
        peer = self.peers.get((address.host, address.port))
        if peer is None or peer.down:
            raise NetworkError(f"Failed to connect to {address}")
        return build_catalog(peer.store.root, chunk_size=1024)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def make_peer(tmp_path, network):
    """
    Factory creating a fake peer that shares the given files.

    Returns:
        Callable (name, files, chunk_size=1024, **behaviour) -> PeerAddress
    """
    def _make(name: str, files: dict, chunk_size: int = 1024, **behaviour) -> PeerAddress:
        root = tmp_path / name
        root.mkdir()
        peer_store = BlockStore(root)
        for file_name, data in files.items():
            (root / file_name).write_bytes(data)
            peer_store.write_blocks(root / file_name, chunk_size)

        address = PeerAddress(name, 8080)
        network.add(address, FakePeer(peer_store, **behaviour))
        return address
    return _make
