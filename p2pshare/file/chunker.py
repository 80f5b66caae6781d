"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 256KB   | Fine-grained retries          | Many block files per movie     |
| 1MB     | Good balance on LAN           | -                              |
| 2MB     | Few requests per large file   | Costlier retry of one chunk    |
| 100MB   | Very few blocks               | A single failure costs a lot   |

Decision: 2MB default (configurable per node)
- Files shared on a LAN are large (video, disk images)
- A 2MB chunk transfers in ~20ms at 1Gbps, so a retry is cheap
- Keeps the number of block files per file manageable

Chunking Strategy: Fixed-Size
- Chunk i covers bytes [i * chunk_size, i * chunk_size + size)
- Only the final chunk may be shorter
- Indices are contiguous and start at 0

One sequential pass computes the whole-file hash and every chunk hash; the
same pass can write each piece out as a block file.
"""

import hashlib
import time
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..errors import ConfigurationError
from .metadata import ChunkDescriptor, FileCatalogEntry, chunk_name_for

# Default chunk size: 2MB
CHUNK_SIZE = 2 * 1024 * 1024

HASH_ALGORITHM = 'sha256'

# Read buffer for whole-file hashing
READ_BUFFER = 64 * 1024


def new_digest():
    """
    Create a fresh SHA-256 hasher.

    Raises:
        ConfigurationError: If the interpreter lacks the hash algorithm
    """
    try:
        return hashlib.new(HASH_ALGORITHM)
    except ValueError as e:
        raise ConfigurationError(f"Hash algorithm {HASH_ALGORITHM} unavailable") from e


def hash_bytes(data: bytes) -> str:
    """SHA-256 of `data` as 64-char lowercase hex."""
    digest = new_digest()
    digest.update(data)
    return digest.hexdigest()


def hash_file(file_path: Path, buffer_size: int = READ_BUFFER) -> str:
    """SHA-256 of a whole file as lowercase hex."""
    digest = new_digest()
    with open(file_path, 'rb') as f:
        while True:
            data = f.read(buffer_size)
            if not data:
                break
            digest.update(data)
    return digest.hexdigest()


def _check_chunk_size(chunk_size: int):
    if not isinstance(chunk_size, int) or chunk_size <= 0:
        raise ConfigurationError(f"Invalid chunk size: {chunk_size!r}")


def get_chunk_count(file_size: int, chunk_size: int) -> int:
    """Calculate number of chunks for a file of given size."""
    _check_chunk_size(chunk_size)
    return (file_size + chunk_size - 1) // chunk_size


def get_chunk_bounds(chunk_index: int, file_size: int, chunk_size: int) -> Tuple[int, int]:
    """
    Get byte range for a specific chunk.

    Returns:
        (start_offset, length) tuple
    """
    start = chunk_index * chunk_size
    length = max(0, min(chunk_size, file_size - start))
    return start, length


class FileChunker:
    """
    Splits files into fixed-size chunks.

    Features:
    - Configurable chunk size
    - SHA-256 hash for each chunk and for the whole file
    - Optional block materialization in the same pass
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        _check_chunk_size(chunk_size)
        self.chunk_size = chunk_size

    def chunk_file(self, file_path: Path) -> Iterator[Tuple[int, bytes, str]]:
        """
        Split a file into chunks.

        Yields:
            (chunk_index, chunk_data, chunk_hash) tuples
        """
        with open(file_path, 'rb') as f:
            chunk_index = 0
            while True:
                data = f.read(self.chunk_size)
                if not data:
                    break
                yield chunk_index, data, hash_bytes(data)
                chunk_index += 1

    def read_chunk(self, file_path: Path, chunk_index: int) -> Optional[bytes]:
        """
        Read a specific chunk from a file.

        Returns:
            Chunk bytes, or None if the index is out of range
        """
        file_size = Path(file_path).stat().st_size
        if chunk_index < 0 or chunk_index >= get_chunk_count(file_size, self.chunk_size):
            return None

        start, length = get_chunk_bounds(chunk_index, file_size, self.chunk_size)
        with open(file_path, 'rb') as f:
            f.seek(start)
            return f.read(length)

    def compute_entry(self, file_path: Path,
                      blocks_dir: Optional[Path] = None) -> FileCatalogEntry:
        """
        Build the catalog entry for a file in a single sequential read.

        Args:
            file_path: File to describe
            blocks_dir: If given, every chunk is also written there as
                        chunk_<index>.dat

        Returns:
            FileCatalogEntry with whole-file and per-chunk hashes

        Raises:
            OSError: On read/write failure
            ConfigurationError: If SHA-256 is unavailable
        """
        file_path = Path(file_path)
        file_hasher = new_digest()
        chunks: List[ChunkDescriptor] = []
        total = 0

        if blocks_dir is not None:
            Path(blocks_dir).mkdir(parents=True, exist_ok=True)

        with open(file_path, 'rb') as f:
            chunk_index = 0
            while True:
                data = f.read(self.chunk_size)
                if not data:
                    break

                file_hasher.update(data)
                name = chunk_name_for(chunk_index)
                chunks.append(ChunkDescriptor(
                    index=chunk_index,
                    size=len(data),
                    hash=hash_bytes(data),
                    name=name,
                ))

                if blocks_dir is not None:
                    with open(Path(blocks_dir) / name, 'wb') as block:
                        block.write(data)

                total += len(data)
                chunk_index += 1

        return FileCatalogEntry(
            name=file_path.name,
            size=total,
            file_hash=file_hasher.hexdigest(),
            chunk_size=self.chunk_size,
            chunks=tuple(chunks),
            created_at=time.time(),
        )


def compute_catalog_entry(file_path: Path, chunk_size: int = CHUNK_SIZE,
                          blocks_dir: Optional[Path] = None) -> FileCatalogEntry:
    """Convenience wrapper around FileChunker.compute_entry."""
    return FileChunker(chunk_size).compute_entry(file_path, blocks_dir)
