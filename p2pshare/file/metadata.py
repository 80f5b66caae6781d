"""
File Metadata

Design Decision: Metadata Structure
====================================

Every shared file is described by one metadata document. It contains:
- File identification (name, total size, whole-file hash)
- Chunk layout (index, block name, hash and size of every chunk)
- Creation timestamp

Wire format (JSON, camelCase keys for compatibility with existing peers):
```
{
  "fileName": "movie.mp4",
  "fileHash": "<64 hex>",
  "totalSize": 2621440,
  "chunkSize": 1048576,
  "chunks": [{"index": 0, "chunkName": "chunk_0.dat",
              "chunkHash": "<64 hex>", "chunkSize": 1048576}, ...],
  "timestamp": 1760000000.0
}
```

Parsing goes through pydantic models so structural problems surface as a
single MalformedDataError and unknown fields are ignored (forward compatible).
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import MalformedDataError

# Lowercase hex SHA-256
HASH_PATTERN = r'^[0-9a-f]{64}$'

# Block file naming inside <file>_blocks/
CHUNK_NAME_FORMAT = "chunk_{index}.dat"
METADATA_FILE_NAME = "_metadata.json"
BLOCKS_SUFFIX = "_blocks"


def chunk_name_for(index: int) -> str:
    """Name of the block file holding chunk `index`."""
    return CHUNK_NAME_FORMAT.format(index=index)


@dataclass(frozen=True)
class ChunkDescriptor:
    """A single chunk of a file. Offset is derived from the entry's chunk size."""
    index: int
    size: int
    hash: str  # SHA-256 as lowercase hex
    name: str = ""

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, 'name', chunk_name_for(self.index))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'chunkName': self.name,
            'chunkHash': self.hash,
            'chunkSize': self.size,
        }


@dataclass(eq=False)
class FileCatalogEntry:
    """
    Complete metadata for one shareable file.

    Two entries are equal iff name, size and whole-file hash match; the
    timestamp and the chunk list do not take part in equality.
    """
    name: str
    size: int
    file_hash: str
    chunk_size: int
    chunks: Tuple[ChunkDescriptor, ...] = ()
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.chunks = tuple(self.chunks)

    def __eq__(self, other):
        if not isinstance(other, FileCatalogEntry):
            return NotImplemented
        return (self.name, self.size, self.file_hash) == \
            (other.name, other.size, other.file_hash)

    def __hash__(self):
        return hash((self.name, self.size, self.file_hash))

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def chunk_offset(self, index: int) -> int:
        """Absolute byte offset of chunk `index` in the file."""
        return index * self.chunk_size

    def get_chunk(self, index: int) -> Optional[ChunkDescriptor]:
        """Get chunk descriptor by index."""
        if 0 <= index < len(self.chunks):
            return self.chunks[index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the metadata document."""
        return {
            'fileName': self.name,
            'fileHash': self.file_hash,
            'totalSize': self.size,
            'chunkSize': self.chunk_size,
            'chunks': [c.to_dict() for c in self.chunks],
            'timestamp': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'FileCatalogEntry':
        """
        Deserialize from a metadata document.

        Raises:
            MalformedDataError: If the document is structurally invalid
        """
        try:
            doc = MetadataDocument.model_validate(data)
        except ValidationError as e:
            raise MalformedDataError(f"Invalid metadata document: {e}") from e
        return doc.to_entry()

    def to_json(self, indent: int = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'FileCatalogEntry':
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedDataError(f"Metadata is not valid JSON: {e}") from e
        return cls.from_dict(data)


# === Wire models ===

class ChunkDocument(BaseModel):
    """One element of the `chunks` array."""
    model_config = ConfigDict(extra='ignore')

    index: int = Field(ge=0)
    chunkName: str = Field(min_length=1)
    chunkHash: str = Field(pattern=HASH_PATTERN)
    chunkSize: int = Field(ge=0)


class MetadataDocument(BaseModel):
    """The per-file metadata document."""
    model_config = ConfigDict(extra='ignore')

    fileName: str = Field(min_length=1)
    fileHash: str = Field(pattern=HASH_PATTERN)
    totalSize: int = Field(ge=0)
    chunkSize: int = Field(gt=0)
    chunks: List[ChunkDocument] = Field(default_factory=list)
    timestamp: Optional[float] = None

    @model_validator(mode='after')
    def _check_layout(self) -> 'MetadataDocument':
        for position, chunk in enumerate(self.chunks):
            if chunk.index != position:
                raise ValueError(
                    f"chunk indices must be contiguous from 0, got {chunk.index} at {position}"
                )
            if chunk.chunkSize > self.chunkSize:
                raise ValueError(f"chunk {chunk.index} larger than chunkSize")
        if sum(c.chunkSize for c in self.chunks) != self.totalSize:
            raise ValueError("chunk sizes do not add up to totalSize")
        return self

    def to_entry(self) -> FileCatalogEntry:
        return FileCatalogEntry(
            name=self.fileName,
            size=self.totalSize,
            file_hash=self.fileHash,
            chunk_size=self.chunkSize,
            chunks=tuple(
                ChunkDescriptor(
                    index=c.index,
                    size=c.chunkSize,
                    hash=c.chunkHash,
                    name=c.chunkName,
                )
                for c in self.chunks
            ),
            created_at=self.timestamp if self.timestamp is not None else time.time(),
        )
