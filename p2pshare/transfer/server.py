"""
Chunk Transfer Server

Design Decision: Server Framework
=================================

Options Considered:
1. Raw asyncio streams with a hand-written request parser
   - Full control, but HTTP parsing and sendfile are ours to get right

2. FastAPI + uvicorn
   - Routing, status codes and FileResponse (sendfile where supported)
   - Sync handlers run on a bounded thread pool out of the box

Decision: FastAPI with synchronous handlers
- Handler work is blocking file I/O and hashing, which belongs on threads
- The thread pool (anyio's default limiter) is sized once at startup,
  2 x CPU count unless configured

Request Pipeline (GET /<file>_blocks/<chunk>):
```
RateLimitCheck -> PathValidate -> HashCompute -> Respond
      |                |               |            |
     429              404             500     200 + X-Content-SHA256
```

The server never rescans the shared directory; metadata comes from the
catalog snapshot published by the CatalogManager.
"""

import logging
import os
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Tuple

import anyio.to_thread
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse

from ..errors import PathTraversalError
from ..file.catalog import CatalogManager
from ..file.chunker import hash_file
from ..file.metadata import BLOCKS_SUFFIX
from .ratelimit import TokenBucket

logger = logging.getLogger(__name__)

HASH_HEADER = "X-Content-SHA256"


def default_workers() -> int:
    """Worker threads for request handling: 2 x CPU count."""
    return 2 * (os.cpu_count() or 1)


def resolve_chunk_path(root: Path, file_name: str, chunk_name: str) -> Path:
    """
    Map a request onto the sandbox.

    Returns:
        Absolute path of the block file

    Raises:
        PathTraversalError: If the normalized path leaves the sandbox root
        FileNotFoundError: If the block does not exist or the name is not a
                           valid path
    """
    sandbox = Path(root).resolve()
    try:
        candidate = (sandbox / f"{file_name}{BLOCKS_SUFFIX}" / chunk_name).resolve()
    except ValueError:
        # NUL bytes and the like can never name a block
        raise FileNotFoundError(f"Invalid block name: {chunk_name!r}") from None

    try:
        candidate.relative_to(sandbox)
    except ValueError:
        raise PathTraversalError(
            f"Request for {file_name}{BLOCKS_SUFFIX}/{chunk_name} escapes {sandbox}"
        ) from None

    if candidate == sandbox or not candidate.is_file():
        raise FileNotFoundError(f"No such block: {file_name}{BLOCKS_SUFFIX}/{chunk_name}")

    return candidate


class ChunkServer:
    """
    Serves block files and catalog metadata out of one sandbox directory.

    Holds the state shared by all request handlers: the sandbox root, the
    catalog, the token bucket and the counters.
    """

    def __init__(self, root: Path, catalog: CatalogManager,
                 rate_limiter: Optional[TokenBucket] = None,
                 workers: Optional[int] = None):
        """
        Initialize the chunk server.

        Args:
            root: Sandbox root (the shared directory)
            catalog: Catalog to answer metadata requests from
            rate_limiter: Admission control (1000 req/s if not given)
            workers: Request handler threads (2 x CPU count if not given)
        """
        self.root = Path(root)
        self.catalog = catalog
        self.rate_limiter = rate_limiter or TokenBucket()
        self.workers = workers or default_workers()

        self._stats_lock = threading.Lock()

        # Statistics
        self.chunks_served = 0
        self.bytes_served = 0
        self.rate_limited = 0
        self.traversal_rejected = 0

    def prepare_chunk(self, file_name: str, chunk_name: str) -> Tuple[Path, int, str]:
        """
        Validate a chunk request and hash the block.

        Returns:
            (path, size, sha256 hex) of the block

        Raises:
            PathTraversalError: Request escapes the sandbox
            FileNotFoundError: No such block
            OSError: Read failure
        """
        path = resolve_chunk_path(self.root, file_name, chunk_name)
        size = path.stat().st_size
        digest = hash_file(path)

        with self._stats_lock:
            self.chunks_served += 1
            self.bytes_served += size

        return path, size, digest

    def admit(self) -> bool:
        """Take a token for one chunk request."""
        if self.rate_limiter.try_acquire():
            return True
        with self._stats_lock:
            self.rate_limited += 1
        return False

    def record_traversal(self):
        with self._stats_lock:
            self.traversal_rejected += 1

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'files': len(self.catalog),
            'chunks_served': self.chunks_served,
            'bytes_served': self.bytes_served,
            'rate_limited': self.rate_limited,
            'traversal_rejected': self.traversal_rejected,
            'workers': self.workers,
        }


# === API Creation ===

def create_app(server: ChunkServer) -> FastAPI:
    """
    Create the FastAPI application for a chunk server.

    Args:
        server: ChunkServer holding the sandbox, catalog and limiter

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Size the handler thread pool, then serve."""
        limiter = anyio.to_thread.current_default_thread_limiter()
        limiter.total_tokens = server.workers
        logger.info(f"Chunk server starting with {server.workers} workers "
                    f"(root: {server.root})")
        yield
        logger.info(f"Chunk server stopping. Served {server.chunks_served} chunks, "
                    f"{server.bytes_served:,} bytes")

    app = FastAPI(
        title="p2pshare chunk server",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/")
    def root():
        """Server status."""
        return server.get_stats()

    @app.get("/_metadata.json")
    def get_metadata(file: Optional[str] = None):
        """Catalog document, or one file's metadata document."""
        if not server.admit():
            raise HTTPException(status_code=429, detail="Too many requests")

        if file is None:
            return server.catalog.to_document()

        entry = server.catalog.get(file)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Unknown file: {file}")
        return entry.to_dict()

    @app.get("/{file_name}_blocks/{chunk_name:path}")
    def get_chunk(file_name: str, chunk_name: str):
        """Serve one block with its SHA-256 in a header."""
        if not server.admit():
            logger.debug(f"Rate limited request for {file_name}/{chunk_name}")
            raise HTTPException(status_code=429, detail="Too many requests")

        try:
            path, size, digest = server.prepare_chunk(file_name, chunk_name)
        except PathTraversalError as e:
            server.record_traversal()
            logger.warning(f"Rejected path traversal attempt: {e}")
            raise HTTPException(status_code=404, detail="Not found")
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Not found")
        except Exception as e:
            logger.error(f"Error serving {file_name}/{chunk_name}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error")

        logger.debug(f"Serving {path.name} of {file_name} ({size} bytes)")
        return FileResponse(
            path,
            media_type="application/octet-stream",
            headers={HASH_HEADER: digest},
        )

    return app


def create_uvicorn_server(server: ChunkServer, host: str = "0.0.0.0",
                          port: int = 8080, log_level: str = "warning"):
    """Build (but don't start) a uvicorn server for the chunk app."""
    import uvicorn

    config = uvicorn.Config(
        create_app(server),
        host=host,
        port=port,
        log_level=log_level,
    )
    return uvicorn.Server(config)


async def run_transfer_server(server: ChunkServer, host: str = "0.0.0.0",
                              port: int = 8080):
    """
    Run the chunk server until cancelled.

    Args:
        server: ChunkServer instance
        host: Host to bind to
        port: Port to listen on
    """
    await create_uvicorn_server(server, host, port).serve()
