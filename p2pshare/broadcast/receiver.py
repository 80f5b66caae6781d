"""
Broadcast Receiver

Design Decision: Receive Pipeline
=================================

Options Considered:
1. A task (or thread) per datagram
   - Unbounded concurrency under a burst, shared state needs locking

2. One receive loop + one assembler over a bounded queue
   - Memory bounded by the queue size; when it is full the datagram is
     dropped, which is what UDP would do anyway
   - Assembly state touched by a single task, no locking

Decision: Receive loop -> asyncio.Queue(maxsize) -> single assembler

Assembly:
- The first fragment seen opens the (single) assembly slot; the expected
  total comes from that fragment
- Fragments of another file are dropped while the slot is open; a slot
  that has seen nothing for `assembly_timeout` seconds is abandoned when
  another file starts arriving
- Duplicate indices are ignored
- When every index has arrived the payloads are concatenated in index
  order, written to <output_dir>/<name> and the slot is reset
"""

import asyncio
import logging
import socket
import struct
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import aiofiles
import aiofiles.os

from ..errors import MalformedDataError
from .wire import MAX_DATAGRAM_SIZE, MULTICAST_GROUP, MULTICAST_PORT, assemble_fragments, decode_fragment

logger = logging.getLogger(__name__)

# Called with (path, sender address) when a file has been assembled
CompletionCallback = Callable[[Path, Optional[Tuple[str, int]]], None]


@dataclass
class BroadcastAssembly:
    """The file currently being reassembled."""
    name: str
    total: int
    sender: Optional[Tuple[str, int]] = None
    fragments: Dict[int, bytes] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    last_fragment_at: float = field(default_factory=time.monotonic)

    @property
    def received(self) -> int:
        return len(self.fragments)

    @property
    def complete(self) -> bool:
        return self.received == self.total


class BroadcastReceiver:
    """
    Listens on a multicast group and reassembles pushed files.
    """

    def __init__(self, output_dir: Path, group: str = MULTICAST_GROUP,
                 port: int = MULTICAST_PORT, queue_size: int = 1024,
                 on_complete: Optional[CompletionCallback] = None,
                 assembly_timeout: Optional[float] = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the receiver.

        Args:
            output_dir: Where assembled files are written
            group: Multicast group to join
            port: Port to listen on
            queue_size: Datagrams buffered between receive loop and assembler
            on_complete: Called after each assembled file
            assembly_timeout: Idle seconds after which an unfinished file
                              gives way to another (None keeps it forever)
            clock: Time source for the idle check
        """
        self.output_dir = Path(output_dir)
        self.group = group
        self.port = port
        self.queue_size = queue_size
        self.on_complete = on_complete
        self.assembly_timeout = assembly_timeout
        self._clock = clock

        self._socket: Optional[socket.socket] = None
        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._receive_task: Optional[asyncio.Task] = None
        self._assemble_task: Optional[asyncio.Task] = None

        self.assembly: Optional[BroadcastAssembly] = None

        # Statistics
        self.files_received = 0
        self.datagrams_received = 0
        self.malformed = 0
        self.duplicates = 0
        self.dropped_foreign = 0
        self.dropped_overflow = 0
        self.abandoned = 0

    def _open_socket(self) -> socket.socket:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Try to set SO_REUSEPORT if available (for macOS/Linux)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except (AttributeError, OSError):
            pass

        s.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, MAX_DATAGRAM_SIZE * 100)
        s.bind(('', self.port))

        mreq = struct.pack("=4s4s", socket.inet_aton(self.group), socket.inet_aton("0.0.0.0"))
        s.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        s.setblocking(False)
        return s

    async def start(self):
        """Join the group and start the receive and assembly tasks."""
        if self._running:
            return

        await aiofiles.os.makedirs(self.output_dir, exist_ok=True)
        self._socket = self._open_socket()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._assemble_task = asyncio.create_task(self._assemble_loop())

        logger.info(f"Broadcast receiver listening on {self.group}:{self.port}")

    async def stop(self):
        """Leave the group and stop both tasks."""
        self._running = False

        for task in (self._receive_task, self._assemble_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._receive_task = None
        self._assemble_task = None

        if self._socket:
            mreq = struct.pack("=4s4s", socket.inet_aton(self.group), socket.inet_aton("0.0.0.0"))
            try:
                self._socket.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, mreq)
            except OSError:
                pass
            self._socket.close()
            self._socket = None

        logger.info(f"Broadcast receiver stopped. Received {self.files_received} files")

    async def _receive_loop(self):
        """Move datagrams from the socket onto the queue."""
        loop = asyncio.get_running_loop()

        while self._running:
            try:
                data, addr = await loop.sock_recvfrom(self._socket, 65535)
            except asyncio.CancelledError:
                raise
            except OSError as e:
                if self._running:
                    logger.error(f"Error receiving broadcast: {e}")
                    await asyncio.sleep(1)
                continue

            self.datagrams_received += 1
            try:
                self._queue.put_nowait((data, addr))
            except asyncio.QueueFull:
                self.dropped_overflow += 1
                logger.debug("Receive queue full, dropping datagram")

    async def _assemble_loop(self):
        """Feed queued datagrams to the assembler, one at a time."""
        while True:
            data, addr = await self._queue.get()
            try:
                await self.handle_datagram(data, addr)
            except Exception as e:
                logger.error(f"Failed to handle broadcast datagram from {addr}: {e}",
                             exc_info=True)
            finally:
                self._queue.task_done()

    async def handle_datagram(self, data: bytes,
                              addr: Optional[Tuple[str, int]] = None) -> Optional[Path]:
        """
        Apply one datagram to the assembly slot.

        Returns:
            Path of the assembled file if this datagram completed it
        """
        try:
            fragment = decode_fragment(data)
        except MalformedDataError as e:
            self.malformed += 1
            logger.debug(f"Dropping malformed datagram from {addr}: {e}")
            return None

        now = self._clock()
        slot = self.assembly
        if slot is not None and fragment.name != slot.name and self._is_stale(slot, now):
            self.abandoned += 1
            logger.warning(f"Abandoning broadcast {slot.name} at {slot.received}/{slot.total} "
                           f"fragments, idle for {now - slot.last_fragment_at:.1f}s")
            slot = self.assembly = None

        if slot is None:
            slot = BroadcastAssembly(name=fragment.name, total=fragment.total, sender=addr,
                                     started_at=now, last_fragment_at=now)
            self.assembly = slot
            logger.info(f"Receiving broadcast {fragment.name} ({fragment.total} fragments) from {addr}")
        elif fragment.name != slot.name:
            self.dropped_foreign += 1
            logger.debug(f"Busy with {slot.name}, dropping fragment of {fragment.name}")
            return None
        elif fragment.total != slot.total:
            self.malformed += 1
            logger.debug(f"Fragment of {fragment.name} disagrees on total "
                         f"({fragment.total} != {slot.total})")
            return None

        slot.last_fragment_at = now

        if fragment.index in slot.fragments:
            self.duplicates += 1
            return None

        slot.fragments[fragment.index] = fragment.payload

        if slot.complete:
            return await self._finish(slot)
        return None

    def _is_stale(self, slot: BroadcastAssembly, now: float) -> bool:
        if self.assembly_timeout is None:
            return False
        return now - slot.last_fragment_at > self.assembly_timeout

    async def _finish(self, slot: BroadcastAssembly) -> Optional[Path]:
        """Write out a completed assembly and reset the slot."""
        self.assembly = None

        name = Path(slot.name).name
        if not name or name == '..' or name != slot.name:
            logger.warning(f"Discarding broadcast with unsafe name {slot.name!r}")
            return None

        output_path = self.output_dir / name
        await aiofiles.os.makedirs(self.output_dir, exist_ok=True)
        async with aiofiles.open(output_path, 'wb') as f:
            await f.write(assemble_fragments(slot.fragments, slot.total))

        self.files_received += 1
        logger.info(f"Broadcast file saved to {output_path} "
                    f"({slot.total} fragments in {self._clock() - slot.started_at:.2f}s)")

        if self.on_complete:
            try:
                self.on_complete(output_path, slot.sender)
            except Exception as e:
                logger.error(f"Callback error: {e}")

        return output_path

    def get_stats(self) -> dict:
        return {
            'files_received': self.files_received,
            'datagrams_received': self.datagrams_received,
            'malformed': self.malformed,
            'duplicates': self.duplicates,
            'dropped_foreign': self.dropped_foreign,
            'dropped_overflow': self.dropped_overflow,
            'abandoned': self.abandoned,
            'assembling': self.assembly.name if self.assembly else None,
        }
