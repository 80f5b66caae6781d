"""
File Module - Chunking, Hashing, Blocks and Catalogs

This module handles file operations for the P2P file sharing system.
"""

from .chunker import FileChunker, CHUNK_SIZE, compute_catalog_entry, hash_bytes, hash_file
from .metadata import ChunkDescriptor, FileCatalogEntry
from .blocks import BlockStore
from .catalog import (
    Catalog,
    CatalogManager,
    build_catalog,
    deserialize_catalog,
    deserialize_entry,
    diff,
    has_all_keys,
    serialize_catalog,
    serialize_entry,
)

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'compute_catalog_entry',
    'hash_bytes',
    'hash_file',
    'ChunkDescriptor',
    'FileCatalogEntry',
    'BlockStore',
    'Catalog',
    'CatalogManager',
    'build_catalog',
    'deserialize_catalog',
    'deserialize_entry',
    'diff',
    'has_all_keys',
    'serialize_catalog',
    'serialize_entry',
]
