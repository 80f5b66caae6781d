"""
Broadcast Sender

Pushes one file to every listening peer with UDP multicast. Best effort:
no acknowledgements and no retransmission, only a fixed delay between
datagrams so a burst doesn't overrun receivers' socket buffers.
"""

import asyncio
import logging
import socket
from pathlib import Path
from typing import Callable, Optional

import aiofiles

from .wire import MAX_DATAGRAM_SIZE, MULTICAST_GROUP, MULTICAST_PORT, payload_size_for, split_fragments

logger = logging.getLogger(__name__)

# (fragments_sent, total_fragments, percent)
SendProgressCallback = Callable[[int, int, int], None]


class BroadcastSender:
    """
    Sends files to a multicast group.
    """

    def __init__(self, group: str = MULTICAST_GROUP, port: int = MULTICAST_PORT,
                 max_datagram: int = MAX_DATAGRAM_SIZE, send_delay: float = 0.001,
                 ttl: int = 1, sock: Optional[socket.socket] = None):
        """
        Initialize the sender.

        Args:
            group: Multicast group address
            port: Destination port
            max_datagram: Datagram size ceiling
            send_delay: Pause between datagrams (seconds)
            ttl: Multicast TTL (1 = stay on the local subnet)
            sock: Pre-made UDP socket (otherwise one is opened per send)
        """
        self.group = group
        self.port = port
        self.max_datagram = max_datagram
        self.send_delay = send_delay
        self.ttl = ttl
        self._sock = sock

        # Statistics
        self.files_sent = 0
        self.fragments_sent = 0

    def _open_socket(self) -> socket.socket:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        s.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, self.max_datagram * 2)
        return s

    async def send_file(self, file_path: Path,
                        progress_callback: SendProgressCallback = None) -> int:
        """
        Send a file as a series of fragments.

        Progress is reported only when the integer percentage advances.

        Returns:
            Number of fragments sent

        Raises:
            ConfigurationError: If the file name doesn't fit in a datagram
            OSError: On read or send failure
        """
        file_path = Path(file_path)
        name = file_path.name
        payload_size = payload_size_for(name, self.max_datagram)

        async with aiofiles.open(file_path, 'rb') as f:
            data = await f.read()

        datagrams = split_fragments(data, name, payload_size)
        total = len(datagrams)
        logger.info(f"Broadcasting {name} ({len(data):,} bytes) as {total} fragments "
                    f"to {self.group}:{self.port}")

        sock = self._sock or self._open_socket()
        sock.setblocking(False)
        loop = asyncio.get_running_loop()
        last_percent = -1

        try:
            for sent, datagram in enumerate(datagrams, start=1):
                await loop.sock_sendto(sock, datagram, (self.group, self.port))
                self.fragments_sent += 1

                percent = sent * 100 // total
                if progress_callback and percent > last_percent:
                    last_percent = percent
                    progress_callback(sent, total, percent)

                if self.send_delay > 0:
                    await asyncio.sleep(self.send_delay)
        finally:
            if self._sock is None:
                sock.close()

        self.files_sent += 1
        logger.info(f"Broadcast of {name} finished")
        return total

    def get_stats(self) -> dict:
        return {
            'files_sent': self.files_sent,
            'fragments_sent': self.fragments_sent,
        }
