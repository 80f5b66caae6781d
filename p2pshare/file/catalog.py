"""
Catalog Builder & Reconciler

A catalog is a node's self-reported inventory: filename -> FileCatalogEntry
for every regular file directly inside the shared directory.

Design Decision: Catalog Updates
================================

Options Considered:
1. Mutate one shared dict in place on every rescan
   - Readers (server threads, handshakes) can observe a half-updated catalog
   - Needs a lock on every read

2. Build a new mapping and swap the reference
   - Readers grab the current reference and never lock
   - Rebuilds are serialized among themselves only

Decision: Copy-on-rebuild
- CatalogManager.rebuild() builds a fresh read-only mapping
- Assigning the new mapping is a single reference swap

Exchange Document:
```
{"protocolVersion": "1.0", "files": [<metadata document>, ...]}
```
"""

import json
import logging
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Set, Union

from ..errors import ConfigurationError, MalformedDataError, ProtocolVersionError
from .blocks import BlockStore
from .chunker import FileChunker, CHUNK_SIZE
from .metadata import FileCatalogEntry

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0"
SUPPORTED_VERSIONS = frozenset({PROTOCOL_VERSION})

Catalog = Mapping[str, FileCatalogEntry]

EMPTY_CATALOG: Catalog = MappingProxyType({})


def _is_shareable(path: Path) -> bool:
    if not path.is_file():
        return False
    if path.name.startswith('.'):
        return False
    return True


def build_catalog(directory: Path, chunk_size: int = CHUNK_SIZE,
                  previous: Optional[Catalog] = None,
                  store: Optional[BlockStore] = None) -> Catalog:
    """
    Build a catalog for the regular files directly inside `directory`.

    Entries from `previous` are kept as-is when the file's hash and size are
    unchanged; changed files get a new entry; vanished files are dropped.

    Args:
        directory: Shared directory (non-recursive)
        chunk_size: Chunk size for new entries
        previous: Last catalog built for this directory
        store: If given, block directories are kept in sync with the catalog

    Returns:
        A read-only catalog mapping

    Raises:
        ConfigurationError: If the directory does not exist
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Shared directory not found: {directory}")

    previous = previous or EMPTY_CATALOG
    chunker = FileChunker(chunk_size)
    entries: Dict[str, FileCatalogEntry] = {}

    for path in sorted(directory.iterdir()):
        if not _is_shareable(path):
            continue

        try:
            entry = chunker.compute_entry(path)
        except OSError as e:
            logger.warning(f"Skipping unreadable file {path.name}: {e}")
            continue

        known = previous.get(path.name) or _stored_entry(store, path.name)

        if known is not None and known == entry:
            entry = known
            if store is not None and not store.has_blocks(entry):
                entry = store.write_blocks(path, entry.chunk_size)
        elif store is not None:
            logger.info(f"Catalog: {path.name} new or changed, writing blocks")
            entry = store.write_blocks(path, chunk_size)

        entries[path.name] = entry

    if store is not None:
        for name in store.list_block_dirs():
            if name not in entries:
                logger.info(f"Catalog: {name} removed, dropping blocks")
                store.remove_blocks(name)

    return MappingProxyType(entries)


def _stored_entry(store: Optional[BlockStore], name: str) -> Optional[FileCatalogEntry]:
    """Metadata left on disk by an earlier run, if any."""
    if store is None:
        return None
    try:
        return store.read_metadata(name)
    except MalformedDataError as e:
        logger.warning(f"Ignoring invalid block metadata for {name}: {e}")
        return None


# === Reconciliation ===

def diff(local: Catalog, remote: Catalog) -> Set[str]:
    """
    Files to fetch: names in `remote` missing from `local` or whose whole-file
    hash differs.
    """
    missing = set()
    for name, remote_entry in remote.items():
        local_entry = local.get(name)
        if local_entry is None or local_entry.file_hash != remote_entry.file_hash:
            missing.add(name)
    return missing


def has_all_keys(local: Catalog, remote: Catalog) -> bool:
    """
    True if every remote filename is present locally.

    Only key presence is checked, not hashes, so a stale local copy still
    counts as present. diff() is the authoritative comparison.
    """
    return all(name in local for name in remote)


# === Serialization ===

def serialize_catalog(catalog: Catalog) -> Dict[str, Any]:
    """Convert a catalog to its versioned exchange document."""
    return {
        'protocolVersion': PROTOCOL_VERSION,
        'files': [catalog[name].to_dict() for name in sorted(catalog)],
    }


def catalog_to_json(catalog: Catalog) -> str:
    return json.dumps(serialize_catalog(catalog))


def deserialize_catalog(document: Union[str, bytes, Dict[str, Any]]) -> Catalog:
    """
    Parse a catalog exchange document.

    Raises:
        ProtocolVersionError: Unsupported protocolVersion
        MalformedDataError: Structurally invalid document
    """
    if isinstance(document, (str, bytes, bytearray)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedDataError(f"Catalog is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise MalformedDataError("Catalog document must be a JSON object")

    if 'protocolVersion' not in document:
        raise MalformedDataError("Catalog document has no protocolVersion")

    version = document['protocolVersion']
    if not isinstance(version, str) or version not in SUPPORTED_VERSIONS:
        raise ProtocolVersionError(version, PROTOCOL_VERSION)

    files = document.get('files')
    if not isinstance(files, list):
        raise MalformedDataError("Catalog document 'files' must be a list")

    entries: Dict[str, FileCatalogEntry] = {}
    for item in files:
        entry = FileCatalogEntry.from_dict(item)
        if entry.name in entries:
            raise MalformedDataError(f"Duplicate file in catalog: {entry.name}")
        entries[entry.name] = entry

    return MappingProxyType(entries)


def serialize_entry(entry: FileCatalogEntry) -> Dict[str, Any]:
    return entry.to_dict()


def deserialize_entry(document: Union[str, bytes, Dict[str, Any]]) -> FileCatalogEntry:
    """Parse a single metadata document."""
    if isinstance(document, (str, bytes, bytearray)):
        return FileCatalogEntry.from_json(document)
    return FileCatalogEntry.from_dict(document)


class CatalogManager:
    """
    Owns a node's current catalog.

    Readers use `snapshot` and never block; `rebuild()` builds a new catalog
    and swaps the reference. Concurrent rebuilds are serialized.
    """

    def __init__(self, directory: Path, chunk_size: int = CHUNK_SIZE,
                 store: Optional[BlockStore] = None):
        self.directory = Path(directory)
        self.chunk_size = chunk_size
        self.store = store
        self._catalog: Catalog = EMPTY_CATALOG
        self._rebuild_lock = threading.Lock()
        self.rebuild_count = 0

    @property
    def snapshot(self) -> Catalog:
        """The current catalog (read-only, never mutated after publication)."""
        return self._catalog

    def get(self, name: str) -> Optional[FileCatalogEntry]:
        return self._catalog.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._catalog

    def __len__(self) -> int:
        return len(self._catalog)

    def rebuild(self) -> Set[str]:
        """
        Rescan the shared directory and publish a new catalog.

        Returns:
            Names that were added, changed or removed
        """
        with self._rebuild_lock:
            old = self._catalog
            new = build_catalog(self.directory, self.chunk_size,
                                previous=old, store=self.store)
            self._catalog = new
            self.rebuild_count += 1

        changed = {name for name in new if old.get(name) != new[name]}
        changed |= {name for name in old if name not in new}

        logger.debug(f"Catalog rebuilt: {len(new)} files, {len(changed)} changed")
        return changed

    def to_document(self) -> Dict[str, Any]:
        return serialize_catalog(self._catalog)


