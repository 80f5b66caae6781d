"""
Peer Node - Main Controller

This is the main entry point that orchestrates all components:
- Block store and catalog for the shared directory
- Chunk transfer server (HTTP) and catalog handshake server (TCP)
- Transfer client for pulling files from peers
- Optional broadcast receiver, and a sender for pushing files

Peers are not discovered here: the node is handed host:port addresses by
whatever directory service sits above it (config, CLI, or a caller).
"""

import asyncio
import logging
import random
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .config import Config
from .errors import (
    MalformedDataError,
    NetworkError,
    NoMetadataAvailable,
    ProtocolVersionError,
)
from .file import BlockStore, Catalog, CatalogManager, diff, has_all_keys
from .transfer.client import ProgressCallback, TransferClient, TransferReport
from .transfer.peers import CATALOG_PORT_OFFSET, PeerAddress, PeerSelector, shuffled
from .transfer.protocol import CatalogHandshakeServer, request_catalog
from .transfer.ratelimit import TokenBucket
from .transfer.server import ChunkServer, create_uvicorn_server
from .broadcast import BroadcastReceiver, BroadcastSender

logger = logging.getLogger(__name__)

# Fetches a peer's catalog: (peer, timeout) -> catalog
CatalogFetcher = Callable[[PeerAddress, float], Awaitable[Catalog]]


class PeerNode:
    """
    A complete file sharing node.

    Combines all components into a unified interface:
    - start() / stop(): serve the shared directory
    - sync(peers): pull every file peers have that we lack
    - fetch(name, peers): pull one file
    - broadcast(path): push one file to the subnet
    """

    def __init__(self, config: Config = None,
                 selector: Optional[PeerSelector] = None,
                 transport=None,
                 catalog_fetcher: CatalogFetcher = request_catalog,
                 rng: Optional[random.Random] = None):
        """
        Initialize a peer node.

        Args:
            config: Node configuration (uses defaults if not provided)
            selector: Peer selection strategy for chunk attempts
            transport: httpx transport override for the transfer client
            catalog_fetcher: How peer catalogs are requested
            rng: Randomness for peer shuffling
        """
        self.config = config or Config()
        self.shared_dir = Path(self.config.shared_dir)

        # Initialize components
        self.store = BlockStore(self.shared_dir)
        self.catalog = CatalogManager(self.shared_dir, self.config.chunk_size, self.store)

        self.rate_limiter = TokenBucket(rate=self.config.rate_limit)
        self.chunk_server = ChunkServer(
            root=self.shared_dir,
            catalog=self.catalog,
            rate_limiter=self.rate_limiter,
            workers=self.config.server_workers,
        )

        self.client = TransferClient(
            download_dir=self.config.downloads,
            max_concurrent=self.config.max_concurrent_downloads,
            max_attempts=self.config.max_chunk_attempts,
            metadata_timeout=self.config.metadata_timeout,
            chunk_timeout=self.config.chunk_timeout,
            progress_interval=self.config.progress_interval,
            selector=selector,
            transport=transport,
        )

        self.handshake = CatalogHandshakeServer(
            catalog=self.catalog,
            host=self.config.host,
            port=self.config.transfer_port + CATALOG_PORT_OFFSET,
            timeout=self.config.handshake_timeout,
        )

        self.sender = BroadcastSender(
            group=self.config.multicast_group,
            port=self.config.multicast_port,
            max_datagram=self.config.max_datagram_size,
            send_delay=self.config.broadcast_send_delay,
        )

        self.receiver: Optional[BroadcastReceiver] = None
        if self.config.receive_broadcasts:
            self.receiver = BroadcastReceiver(
                output_dir=self.config.downloads,
                group=self.config.multicast_group,
                port=self.config.multicast_port,
                on_complete=self._on_broadcast_received,
                assembly_timeout=self.config.broadcast_assembly_timeout,
            )

        self._catalog_fetcher = catalog_fetcher
        self._rng = rng

        # State
        self._running = False
        self._http_server = None
        self._http_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """
        Start the node.

        This starts all services:
        1. Catalog build (blocks written for every shared file)
        2. Chunk transfer server
        3. Catalog handshake server
        4. Broadcast receiver, when enabled
        """
        if self._running:
            return

        logger.info("Starting peer node...")

        self.shared_dir.mkdir(parents=True, exist_ok=True)
        await self.rebuild_catalog()

        # Start transfer server
        self._http_server = create_uvicorn_server(
            self.chunk_server, self.config.host, self.config.transfer_port
        )
        self._http_task = asyncio.create_task(self._http_server.serve())
        while not self._http_server.started:
            if self._http_task.done():
                self._http_task.result()
                raise NetworkError(f"Chunk server failed to start on port {self.config.transfer_port}")
            await asyncio.sleep(0.05)

        # Start handshake server
        await self.handshake.start()

        if self.receiver:
            await self.receiver.start()

        self._running = True

        logger.info("Peer node started successfully")
        logger.info(f"  Transfer Port: {self.config.transfer_port}")
        logger.info(f"  Catalog Port: {self.handshake.port}")
        logger.info(f"  Shared Dir: {self.shared_dir}")
        logger.info(f"  Files: {len(self.catalog)}")

    async def stop(self):
        """Stop the node."""
        if not self._running:
            return

        logger.info("Stopping peer node...")

        self._running = False

        if self.receiver:
            await self.receiver.stop()
        await self.handshake.stop()

        if self._http_server:
            self._http_server.should_exit = True
        if self._http_task:
            await self._http_task
            self._http_task = None

        logger.info("Peer node stopped")

    async def wait_closed(self):
        """Block until the transfer server exits."""
        if self._http_task:
            await self._http_task

    def _on_broadcast_received(self, path: Path, sender: Optional[Tuple[str, int]]):
        logger.info(f"Received {path.name} by broadcast from {sender[0] if sender else 'unknown'}")

    # === Catalog ===

    async def rebuild_catalog(self) -> Set[str]:
        """Rescan the shared directory; returns names that changed."""
        changed = await asyncio.to_thread(self.catalog.rebuild)
        if changed:
            logger.info(f"Catalog: {len(self.catalog)} files, {len(changed)} changed")
        return changed

    # === File Operations ===

    def _peers(self, peers: Optional[Sequence[PeerAddress]]) -> List[PeerAddress]:
        if peers is None:
            peers = self.config.peer_addresses()
        return shuffled(peers, self._rng)

    async def fetch(self, file_name: str, peers: Optional[Sequence[PeerAddress]] = None,
                    progress_callback: ProgressCallback = None) -> TransferReport:
        """
        Download one file from peers.

        Returns:
            TransferReport (check .verified)

        Raises:
            NoMetadataAvailable: No peer returned metadata for the file
        """
        peers = self._peers(peers)
        report = await self.client.fetch_file(peers, file_name,
                                              progress_callback=progress_callback)
        await self.rebuild_catalog()
        return report

    async def sync(self, peers: Optional[Sequence[PeerAddress]] = None,
                   progress_callback: ProgressCallback = None) -> Dict[str, TransferReport]:
        """
        Pull every file peers advertise that we lack or hold a different
        version of.

        Each missing file is fetched from the peers advertising exactly that
        hash. A peer that can't be reached is skipped.

        Returns:
            file name -> TransferReport for each file fetched
        """
        peers = self._peers(peers)
        await self.rebuild_catalog()
        local = self.catalog.snapshot

        # Gather catalogs
        remotes: List[Tuple[PeerAddress, Catalog]] = []
        for peer in peers:
            try:
                remote = await self._catalog_fetcher(peer, self.config.handshake_timeout)
            except (NetworkError, MalformedDataError, ProtocolVersionError) as e:
                logger.warning(f"Sync: skipping {peer}: {e}")
                continue
            remotes.append((peer, remote))

        # Decide what to fetch; the first peer (in shuffled order) to offer a
        # name decides which version we want
        wanted: Dict[str, str] = {}
        for peer, remote in remotes:
            if self.config.sync_fast_path and has_all_keys(local, remote):
                logger.debug(f"Sync: {peer} has nothing new")
                continue
            for name in sorted(diff(local, remote)):
                wanted.setdefault(name, remote[name].file_hash)

        if not wanted:
            logger.info(f"Sync: up to date with {len(remotes)} peers")
            return {}

        logger.info(f"Sync: {len(wanted)} files to fetch")

        reports: Dict[str, TransferReport] = {}
        for name, file_hash in wanted.items():
            sources = [
                peer for peer, remote in remotes
                if name in remote and remote[name].file_hash == file_hash
            ]
            try:
                report = await self.client.fetch_file(sources, name,
                                                      progress_callback=progress_callback)
            except (NoMetadataAvailable, NetworkError, MalformedDataError) as e:
                logger.error(f"Sync: could not fetch {name}: {e}")
                continue
            reports[name] = report

        await self.rebuild_catalog()
        return reports

    async def broadcast(self, file_path: Path, progress_callback=None) -> int:
        """Push a file to every listening peer; returns fragments sent."""
        return await self.sender.send_file(Path(file_path), progress_callback)

    def get_stats(self) -> dict:
        """Get node statistics."""
        return {
            'running': self._running,
            'shared_dir': str(self.shared_dir),
            'files': len(self.catalog),
            'catalog_rebuilds': self.catalog.rebuild_count,
            'handshakes_served': self.handshake.requests_served,
            'server': self.chunk_server.get_stats(),
            'client': self.client.get_stats(),
            'broadcast': self.sender.get_stats(),
            'receiver': self.receiver.get_stats() if self.receiver else None,
        }
