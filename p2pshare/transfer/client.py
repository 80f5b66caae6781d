"""
Chunk Transfer Client

Design Decision: Download Strategy
===================================

Options Considered:
1. Sequential download from a single peer
   - Simple but slow, single point of failure

2. Round-robin chunk assignment, failed chunks retried afterwards
   - Even spread, but a slow peer holds its whole share hostage

3. One task per chunk, peer chosen per attempt
   - Any chunk can go to any peer on any attempt
   - Retries naturally move to another peer

Decision: One task per chunk, bounded by a semaphore
- At most `max_concurrent` (default 8) chunk fetches in flight
- Peer chosen by a pluggable selector for every attempt (uniform random
  by default)
- A failed attempt is retried in the same task, up to `max_attempts` total;
  after that the chunk is abandoned and the rest of the file continues
- Each chunk is written at its absolute offset in a pre-sized output file,
  so completion order doesn't matter

Verification:
- Per chunk: the X-Content-SHA256 header AND the body hash must equal the
  chunk hash from the metadata
- Per file: the whole-file hash is recomputed at the end and reported,
  never silently accepted

Download Flow:
1. Get metadata from the first peer that returns a usable document
2. Prepare a hidden partial file (.<name>.part), sized to the file
3. Fetch all chunks in parallel into the partial file
4. Verify the whole file
5. Move the partial file to its final name, only if it verified
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence
from urllib.parse import quote

import aiofiles
import aiofiles.os
import httpx

from ..errors import (
    HashMismatchError,
    MalformedDataError,
    NetworkError,
    NoMetadataAvailable,
    RateLimitedError,
)
from ..file.catalog import deserialize_entry
from ..file.chunker import hash_bytes, hash_file
from ..file.metadata import BLOCKS_SUFFIX, METADATA_FILE_NAME, ChunkDescriptor, FileCatalogEntry
from .peers import PeerAddress, PeerSelector, RandomPeerSelector
from .server import HASH_HEADER

logger = logging.getLogger(__name__)

# Downloads land in a hidden sibling (never catalogued) until verified
PARTIAL_SUFFIX = ".part"


def partial_path_for(output_path: Path) -> Path:
    """Hidden sibling a download is written to: movie.mp4 -> .movie.mp4.part"""
    return output_path.with_name(f".{output_path.name}{PARTIAL_SUFFIX}")


@dataclass
class TransferAttempt:
    """One try at fetching one chunk."""
    peer: str
    attempt: int
    outcome: str  # 'ok', 'network', 'rate_limited', 'hash_mismatch'
    error: Optional[str] = None


@dataclass
class ChunkResult:
    """What happened to one chunk."""
    index: int
    succeeded: bool = False
    attempts: List[TransferAttempt] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'succeeded': self.succeeded,
            'attempts': [
                {'peer': a.peer, 'attempt': a.attempt, 'outcome': a.outcome, 'error': a.error}
                for a in self.attempts
            ],
        }


@dataclass
class TransferReport:
    """Outcome of a whole-file fetch."""
    file_name: str
    expected_hash: str
    computed_hash: str
    output_path: Optional[Path] = None
    chunks: List[ChunkResult] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return self.computed_hash == self.expected_hash

    @property
    def failed_chunks(self) -> List[int]:
        return [c.index for c in self.chunks if not c.succeeded]

    @property
    def total_attempts(self) -> int:
        return sum(len(c.attempts) for c in self.chunks)

    def raise_for_verification(self):
        """
        Raise if the assembled file doesn't match.

        Raises:
            HashMismatchError: computed hash != expected hash
        """
        if not self.verified:
            raise HashMismatchError(
                f"{self.file_name}: file hash mismatch "
                f"({len(self.failed_chunks)} chunks failed)",
                expected=self.expected_hash,
                actual=self.computed_hash,
            )

    def to_dict(self) -> dict:
        return {
            'file_name': self.file_name,
            'expected_hash': self.expected_hash,
            'computed_hash': self.computed_hash,
            'verified': self.verified,
            'failed_chunks': self.failed_chunks,
            'total_attempts': self.total_attempts,
            'output_path': str(self.output_path) if self.output_path else None,
            'chunks': [c.to_dict() for c in self.chunks],
        }


@dataclass
class DownloadProgress:
    """Live download counters read by the progress monitor."""
    total_chunks: int
    completed_chunks: int = 0
    failed_chunks: int = 0
    bytes_downloaded: int = 0
    start_time: float = field(default_factory=time.time)
    phase: str = 'initializing'  # 'initializing', 'downloading', 'verifying', 'complete', 'failed'
    file_name: str = ''
    file_size: int = 0

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_chunks == 0:
            return 1.0
        return self.completed_chunks / self.total_chunks

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        """Download speed in bytes/second."""
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_downloaded / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'total_chunks': self.total_chunks,
            'completed_chunks': self.completed_chunks,
            'failed_chunks': self.failed_chunks,
            'bytes_downloaded': self.bytes_downloaded,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'phase': self.phase,
            'file_name': self.file_name,
            'file_size': self.file_size,
        }


# Progress callback type
ProgressCallback = Callable[[DownloadProgress], None]


def _outcome_for(error: Exception) -> str:
    if isinstance(error, RateLimitedError):
        return 'rate_limited'
    if isinstance(error, HashMismatchError):
        return 'hash_mismatch'
    return 'network'


class TransferClient:
    """
    Downloads complete files chunk by chunk from a pool of peers.
    """

    def __init__(self, download_dir: Path, max_concurrent: int = 8,
                 max_attempts: int = 3, metadata_timeout: float = 5.0,
                 chunk_timeout: float = 10.0, progress_interval: float = 0.5,
                 selector: Optional[PeerSelector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the transfer client.

        Args:
            download_dir: Where downloaded files are written
            max_concurrent: Maximum chunk fetches in flight
            max_attempts: Attempts per chunk before it is abandoned
            metadata_timeout: Per-peer timeout for the metadata request
            chunk_timeout: Per-attempt timeout for a chunk request
            progress_interval: Seconds between progress reports
            selector: Chooses the peer for each attempt
            transport: httpx transport override (tests)
        """
        self.download_dir = Path(download_dir)
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.metadata_timeout = metadata_timeout
        self.chunk_timeout = chunk_timeout
        self.progress_interval = progress_interval
        self.selector = selector or RandomPeerSelector()
        self.transport = transport

        # Statistics
        self.files_downloaded = 0
        self.total_bytes = 0

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            limits=httpx.Limits(max_connections=self.max_concurrent),
        )

    # === Metadata ===

    async def fetch_metadata(self, peers: Sequence[PeerAddress],
                             file_name: str) -> FileCatalogEntry:
        """
        Ask peers in order for a file's metadata document.

        Returns:
            The first parseable entry for `file_name`

        Raises:
            NoMetadataAvailable: No peer returned usable metadata
        """
        async with self._http_client() as http:
            for peer in peers:
                url = f"{peer.base_url}/{METADATA_FILE_NAME}"
                try:
                    response = await http.get(
                        url, params={'file': file_name}, timeout=self.metadata_timeout
                    )
                except httpx.HTTPError as e:
                    logger.debug(f"Metadata request to {peer} failed: {e}")
                    continue

                if response.status_code != 200:
                    logger.debug(f"Metadata request to {peer}: HTTP {response.status_code}")
                    continue

                try:
                    entry = deserialize_entry(response.content)
                except MalformedDataError as e:
                    logger.warning(f"Invalid metadata for {file_name} from {peer}: {e}")
                    continue

                if entry.name != file_name:
                    logger.warning(f"{peer} answered with metadata for {entry.name!r}")
                    continue

                logger.info(f"Got metadata for {file_name} from {peer}: "
                            f"{entry.size:,} bytes, {entry.chunk_count} chunks")
                return entry

        raise NoMetadataAvailable(f"No peer returned metadata for {file_name}")

    # === Output ===

    def output_path_for(self, entry: FileCatalogEntry) -> Path:
        """
        Final destination of a download inside the download directory.

        Raises:
            MalformedDataError: If the file name isn't a plain base name
        """
        base = Path(entry.name).name
        if not base or base != entry.name or base in ('.', '..'):
            raise MalformedDataError(f"Refusing to write file named {entry.name!r}")
        return self.download_dir / base

    async def prepare_output_file(self, entry: FileCatalogEntry,
                                  output_path: Optional[Path] = None) -> Path:
        """
        Create the hidden partial file chunks are written into, already at
        the final size. A partial left by an earlier attempt is discarded;
        the destination itself is not touched until the download verifies.

        Returns:
            Path of the partial file

        Raises:
            MalformedDataError: If the file name isn't a plain base name
        """
        if output_path is None:
            output_path = self.output_path_for(entry)

        partial = partial_path_for(Path(output_path))
        await aiofiles.os.makedirs(partial.parent, exist_ok=True)

        with suppress(FileNotFoundError):
            await aiofiles.os.remove(partial)

        async with aiofiles.open(partial, 'wb') as f:
            await f.truncate(entry.size)

        return partial

    # === Chunks ===

    async def _get_chunk(self, http: httpx.AsyncClient, peer: PeerAddress,
                         entry: FileCatalogEntry, chunk: ChunkDescriptor) -> bytes:
        """
        Fetch and verify one chunk from one peer.

        Raises:
            NetworkError: Connection failure, timeout or non-200 status
            RateLimitedError: Peer answered 429
            HashMismatchError: Header or body hash != expected chunk hash
        """
        url = f"{peer.base_url}/{quote(entry.name + BLOCKS_SUFFIX)}/{quote(chunk.name)}"

        try:
            response = await http.get(url, timeout=self.chunk_timeout)
        except httpx.HTTPError as e:
            raise NetworkError(f"{peer}: {type(e).__name__}: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"{peer}: too many requests")
        if response.status_code != 200:
            raise NetworkError(f"{peer}: HTTP {response.status_code}")

        advertised = response.headers.get(HASH_HEADER, "").strip()
        if advertised != chunk.hash:
            raise HashMismatchError(
                f"{peer}: {HASH_HEADER} header does not match chunk {chunk.index}",
                expected=chunk.hash, actual=advertised,
            )

        data = response.content
        actual = hash_bytes(data)
        if actual != chunk.hash:
            raise HashMismatchError(
                f"{peer}: body of chunk {chunk.index} does not match its hash",
                expected=chunk.hash, actual=actual,
            )

        return data

    async def _monitor(self, progress: DownloadProgress,
                       callback: ProgressCallback):
        """Report progress every `progress_interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.progress_interval)
            callback(progress)

    async def download_all(self, entry: FileCatalogEntry,
                           peers: Sequence[PeerAddress], output_path: Path,
                           progress_callback: ProgressCallback = None) -> List[ChunkResult]:
        """
        Fetch every chunk of `entry` into a prepared output file.

        Chunks that exhaust their attempts are left as holes; the returned
        results say which.

        Returns:
            One ChunkResult per chunk, in index order

        Raises:
            NetworkError: If the peer pool is empty
        """
        if not peers:
            raise NetworkError(f"No peers to download {entry.name} from")

        peers = list(peers)
        progress = DownloadProgress(
            total_chunks=entry.chunk_count,
            file_name=entry.name,
            file_size=entry.size,
            phase='downloading',
        )
        semaphore = asyncio.Semaphore(self.max_concurrent)
        write_lock = asyncio.Lock()

        logger.info(f"Downloading {entry.name}: {entry.chunk_count} chunks "
                    f"from {len(peers)} peers")

        async with aiofiles.open(output_path, 'r+b') as out, self._http_client() as http:

            async def fetch_chunk(chunk: ChunkDescriptor) -> ChunkResult:
                result = ChunkResult(index=chunk.index)

                async with semaphore:
                    for attempt in range(1, self.max_attempts + 1):
                        peer = self.selector.select(peers, chunk.index, attempt)
                        try:
                            data = await self._get_chunk(http, peer, entry, chunk)
                        except (NetworkError, HashMismatchError) as e:
                            result.attempts.append(TransferAttempt(
                                peer=str(peer), attempt=attempt,
                                outcome=_outcome_for(e), error=str(e),
                            ))
                            logger.warning(f"Chunk {chunk.index} of {entry.name}, "
                                           f"attempt {attempt}/{self.max_attempts}: {e}")
                            continue

                        async with write_lock:
                            await out.seek(entry.chunk_offset(chunk.index))
                            await out.write(data)

                        result.attempts.append(TransferAttempt(
                            peer=str(peer), attempt=attempt, outcome='ok',
                        ))
                        result.succeeded = True
                        progress.completed_chunks += 1
                        progress.bytes_downloaded += len(data)
                        return result

                progress.failed_chunks += 1
                logger.error(f"Giving up on chunk {chunk.index} of {entry.name} "
                             f"after {self.max_attempts} attempts")
                return result

            monitor = None
            if progress_callback:
                monitor = asyncio.create_task(self._monitor(progress, progress_callback))

            try:
                results = await asyncio.gather(*(fetch_chunk(c) for c in entry.chunks))
            finally:
                if monitor is not None:
                    monitor.cancel()
                    with suppress(asyncio.CancelledError):
                        await monitor

        progress.phase = 'failed' if progress.failed_chunks else 'complete'
        if progress_callback:
            progress_callback(progress)

        return list(results)

    # === Verification ===

    async def verify_output(self, output_path: Path) -> str:
        """Recompute the whole-file hash of the assembled output."""
        return await asyncio.to_thread(hash_file, output_path)

    async def fetch_file(self, peers: Sequence[PeerAddress], file_name: str,
                         output_path: Optional[Path] = None,
                         progress_callback: ProgressCallback = None) -> TransferReport:
        """
        Download one file: metadata, prepare, chunks, verify, commit.

        Only a verified download is moved to its final name. A whole-file
        mismatch is reported (verified=False), not re-fetched, and the
        partial file is left in place (hidden) for inspection.

        Returns:
            TransferReport with computed and expected hashes

        Raises:
            NoMetadataAvailable: No peer returned usable metadata
        """
        entry = await self.fetch_metadata(peers, file_name)
        final_path = Path(output_path) if output_path else self.output_path_for(entry)
        partial = await self.prepare_output_file(entry, final_path)
        results = await self.download_all(entry, peers, partial, progress_callback)
        computed = await self.verify_output(partial)

        report = TransferReport(
            file_name=entry.name,
            expected_hash=entry.file_hash,
            computed_hash=computed,
            output_path=partial,
            chunks=results,
        )

        if report.verified:
            await aiofiles.os.replace(partial, final_path)
            report.output_path = final_path
            self.files_downloaded += 1
            self.total_bytes += entry.size
            logger.info(f"Verified {entry.name} ({entry.size:,} bytes) -> {final_path}")
        else:
            logger.error(f"Verification failed for {entry.name}: expected "
                         f"{entry.file_hash[:16]}..., got {computed[:16]}... "
                         f"({len(report.failed_chunks)} chunks failed), "
                         f"partial kept at {partial}")

        return report

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'files_downloaded': self.files_downloaded,
            'total_bytes': self.total_bytes,
        }
