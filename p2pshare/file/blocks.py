"""
Block Storage

Design Decision: Storage Strategy
==================================

Options Considered:
1. Serve chunks by seeking into the original file
   - No extra disk usage
   - Chunk names can't be resolved to a file, every request needs the catalog

2. Content-addressed chunk store (chunks/ab/abcdef...)
   - Deduplicates, but chunk files lose their association with a file

3. One block directory per shared file
   - Mirrors the request path /<file>_blocks/<chunk>
   - Easy to inspect, verify and remove per file

Decision: One `<file>_blocks/` directory per shared file
- The server maps a request path straight onto the sandbox
- `_metadata.json` next to the blocks makes the directory self-describing

Storage Layout:
```
shared/
├── movie.mp4                 # the shared file itself
└── movie.mp4_blocks/
    ├── _metadata.json        # metadata document
    ├── chunk_0.dat
    ├── chunk_1.dat
    └── chunk_2.dat
```
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from ..errors import HashMismatchError
from .chunker import FileChunker, new_digest, hash_file, CHUNK_SIZE
from .metadata import BLOCKS_SUFFIX, METADATA_FILE_NAME, FileCatalogEntry

logger = logging.getLogger(__name__)

# Copy buffer used when merging blocks
MERGE_BUFFER = 64 * 1024


class BlockStore:
    """
    On-disk block directories for shared files.

    Provides:
    - Block materialization (chunk + write + metadata in one pass)
    - Block verification against recorded hashes
    - File reassembly from blocks
    - Cleanup of stale block directories
    """

    def __init__(self, root: Path):
        """
        Initialize block storage.

        Args:
            root: Sandbox root (the shared directory)
        """
        self.root = Path(root)

    def blocks_dir(self, file_name: str) -> Path:
        """Block directory for a file."""
        return self.root / f"{file_name}{BLOCKS_SUFFIX}"

    def metadata_path(self, file_name: str) -> Path:
        return self.blocks_dir(file_name) / METADATA_FILE_NAME

    # === Writing ===

    def write_blocks(self, file_path: Path,
                     chunk_size: int = CHUNK_SIZE) -> FileCatalogEntry:
        """
        Split a file into block files and write its metadata document.

        Any previous block directory for the file is replaced.

        Returns:
            The file's catalog entry
        """
        file_path = Path(file_path)
        blocks_dir = self.blocks_dir(file_path.name)
        if blocks_dir.exists():
            shutil.rmtree(blocks_dir)

        entry = FileChunker(chunk_size).compute_entry(file_path, blocks_dir=blocks_dir)
        self.write_metadata(entry)

        logger.debug(f"Wrote {entry.chunk_count} blocks for {entry.name}")
        return entry

    def write_metadata(self, entry: FileCatalogEntry):
        """Write an entry's metadata document into its block directory."""
        path = self.metadata_path(entry.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            f.write(entry.to_json(indent=2))

    # === Reading ===

    def read_metadata(self, file_name: str) -> Optional[FileCatalogEntry]:
        """
        Load the metadata document of a file's blocks.

        Returns:
            FileCatalogEntry, or None if there is no metadata

        Raises:
            MalformedDataError: If the document is invalid
        """
        path = self.metadata_path(file_name)
        if not path.is_file():
            return None

        with open(path, 'r') as f:
            return FileCatalogEntry.from_json(f.read())

    def has_blocks(self, entry: FileCatalogEntry) -> bool:
        """Check that every block of an entry exists on disk."""
        blocks_dir = self.blocks_dir(entry.name)
        return all((blocks_dir / c.name).is_file() for c in entry.chunks)

    def list_block_dirs(self) -> List[str]:
        """Names of the files that have a block directory."""
        if not self.root.is_dir():
            return []
        return sorted(
            p.name[:-len(BLOCKS_SUFFIX)]
            for p in self.root.iterdir()
            if p.is_dir() and p.name.endswith(BLOCKS_SUFFIX)
        )

    # === Verification / reassembly ===

    def verify_blocks(self, file_name: str) -> bool:
        """
        Recompute the hash of every block and compare with the metadata.

        Returns:
            True if all blocks are present and intact
        """
        entry = self.read_metadata(file_name)
        if entry is None:
            return False

        blocks_dir = self.blocks_dir(file_name)
        for chunk in entry.chunks:
            chunk_path = blocks_dir / chunk.name
            if not chunk_path.is_file():
                logger.warning(f"Missing block {chunk.name} of {file_name}")
                return False
            if hash_file(chunk_path) != chunk.hash:
                logger.warning(f"Block verification failed: {chunk.name} of {file_name}")
                return False
        return True

    def merge_blocks(self, file_name: str, output_path: Path) -> bool:
        """
        Reassemble a file from its blocks.

        Each block is verified before it is copied.

        Returns:
            True if the merged file hashes to the recorded file hash

        Raises:
            FileNotFoundError: If there is no metadata for the file
            HashMismatchError: If a block is corrupt
        """
        entry = self.read_metadata(file_name)
        if entry is None:
            raise FileNotFoundError(f"No blocks for {file_name}")

        blocks_dir = self.blocks_dir(file_name)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        file_hasher = new_digest()

        with open(output_path, 'wb') as out:
            for chunk in sorted(entry.chunks, key=lambda c: c.index):
                chunk_path = blocks_dir / chunk.name
                actual = hash_file(chunk_path)
                if actual != chunk.hash:
                    raise HashMismatchError(
                        f"Corrupt block {chunk.name} of {file_name}",
                        expected=chunk.hash, actual=actual,
                    )

                with open(chunk_path, 'rb') as block:
                    while True:
                        data = block.read(MERGE_BUFFER)
                        if not data:
                            break
                        out.write(data)
                        file_hasher.update(data)

        return file_hasher.hexdigest() == entry.file_hash

    # === Cleanup ===

    def remove_blocks(self, file_name: str) -> bool:
        """Delete a file's block directory."""
        blocks_dir = self.blocks_dir(file_name)
        if blocks_dir.is_dir():
            shutil.rmtree(blocks_dir)
            return True
        return False
