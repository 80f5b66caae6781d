"""
Transfer Module - Catalog Handshake, Chunk Server and Client

Handles HTTP chunk transfers and catalog exchange between peers.
"""

from .peers import PeerAddress, PeerSelector, RandomPeerSelector, parse_peers, shuffled
from .ratelimit import TokenBucket
from .protocol import CatalogHandshakeServer, request_catalog
from .server import ChunkServer, create_app, resolve_chunk_path, run_transfer_server
from .client import (
    ChunkResult,
    DownloadProgress,
    TransferAttempt,
    TransferClient,
    TransferReport,
)

__all__ = [
    'PeerAddress',
    'PeerSelector',
    'RandomPeerSelector',
    'parse_peers',
    'shuffled',
    'TokenBucket',
    'CatalogHandshakeServer',
    'request_catalog',
    'ChunkServer',
    'create_app',
    'resolve_chunk_path',
    'run_transfer_server',
    'ChunkResult',
    'DownloadProgress',
    'TransferAttempt',
    'TransferClient',
    'TransferReport',
]
