"""
Catalog Handshake Protocol

Design Decision: Catalog Exchange Transport
===========================================

Options Considered:
1. Reuse the HTTP chunk server (GET /_metadata.json)
   - Already there, but peers that only speak the handshake can't use it

2. Line-oriented TCP exchange
   - Matches what existing peers speak
   - Trivial to implement and debug with netcat

Decision: Line-oriented TCP handshake on the port next to the chunk server

Exchange:
```
client -> server:  LIST_REQUEST\n
server -> client:  File_List\n
server -> client:  {"protocolVersion": "1.0", "files": [...]}   (until EOF)
```

Any other request token gets `ERROR\n` and the connection is closed.
"""

import asyncio
import logging
from typing import Optional

from ..errors import MalformedDataError, NetworkError
from ..file.catalog import Catalog, CatalogManager, catalog_to_json, deserialize_catalog
from .peers import PeerAddress

logger = logging.getLogger(__name__)

LIST_REQUEST = "LIST_REQUEST"
LIST_RESPONSE = "File_List"
ERROR_RESPONSE = "ERROR"

# Upper bound on a catalog document (16MB)
MAX_DOCUMENT_SIZE = 16 * 1024 * 1024


class CatalogHandshakeServer:
    """
    TCP server answering catalog requests from peers.

    Each connection carries exactly one exchange and is closed afterwards.
    """

    def __init__(self, catalog: CatalogManager, host: str = '0.0.0.0',
                 port: int = 8081, rebuild_on_request: bool = True,
                 timeout: float = 5.0):
        """
        Initialize the handshake server.

        Args:
            catalog: Catalog to advertise
            host: Bind address
            port: Bind port
            rebuild_on_request: Rescan the shared directory before answering
            timeout: Seconds to wait for the request line
        """
        self.catalog = catalog
        self.host = host
        self.port = port
        self.rebuild_on_request = rebuild_on_request
        self.timeout = timeout
        self.server: Optional[asyncio.AbstractServer] = None

        # Statistics
        self.requests_served = 0

    async def start(self):
        """Start the handshake server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port,
        )
        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"Catalog handshake server listening on {addr}")

    async def stop(self):
        """Stop the handshake server."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Catalog handshake server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle one incoming handshake."""
        peer = writer.get_extra_info('peername')
        logger.debug(f"Handshake connection from {peer}")

        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
            command = line.decode('utf-8', errors='replace').strip()

            if command == LIST_REQUEST:
                if self.rebuild_on_request:
                    await asyncio.to_thread(self.catalog.rebuild)
                document = catalog_to_json(self.catalog.snapshot)
                writer.write(f"{LIST_RESPONSE}\n".encode('utf-8'))
                writer.write(document.encode('utf-8'))
                await writer.drain()
                self.requests_served += 1
            else:
                logger.warning(f"Unknown handshake command from {peer}: {command[:32]!r}")
                writer.write(f"{ERROR_RESPONSE}\n".encode('utf-8'))
                await writer.drain()

        except asyncio.TimeoutError:
            logger.debug(f"Handshake timeout from {peer}")
        except Exception as e:
            logger.error(f"Error handling handshake from {peer}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


async def request_catalog(peer: PeerAddress, timeout: float = 5.0) -> Catalog:
    """
    Fetch a peer's catalog over the handshake.

    Returns:
        The peer's catalog

    Raises:
        NetworkError: Peer unreachable or connection dropped
        MalformedDataError: Wrong acknowledgement token or invalid document
        ProtocolVersionError: Unsupported catalog version
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(peer.host, peer.catalog_port),
            timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise NetworkError(f"Failed to connect to {peer.host}:{peer.catalog_port}: {e}") from e

    try:
        writer.write(f"{LIST_REQUEST}\n".encode('utf-8'))
        await writer.drain()

        try:
            ack = await asyncio.wait_for(reader.readline(), timeout=timeout)
        except ValueError as e:
            raise MalformedDataError(f"Handshake reply from {peer} too long") from e

        if ack.decode('utf-8', errors='replace').strip() != LIST_RESPONSE:
            raise MalformedDataError(
                f"Unexpected handshake reply from {peer}: {ack[:32]!r}"
            )

        parts = []
        received = 0
        while True:
            data = await asyncio.wait_for(reader.read(64 * 1024), timeout=timeout)
            if not data:
                break
            received += len(data)
            if received > MAX_DOCUMENT_SIZE:
                raise MalformedDataError(f"Catalog from {peer} exceeds {MAX_DOCUMENT_SIZE} bytes")
            parts.append(data)
        body = b''.join(parts)

    except (OSError, asyncio.TimeoutError) as e:
        raise NetworkError(f"Handshake with {peer} failed: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    return deserialize_catalog(body)
