"""
Broadcast Wire Format

Design Decision: Datagram Layout
================================

Options Considered:
1. JSON envelope with base64 payload
   - Self-describing, but ~33% overhead on every byte of the file

2. Fixed binary header + raw payload
   - No encoding overhead, compatible with existing peers

Decision: Big-endian binary header
```
+-----------+-----------+-------------+-------------+-----------+
| index:i32 | total:i32 | nameLen:i32 | name (utf8) | payload   |
+-----------+-----------+-------------+-------------+-----------+
```
- Every fragment carries the file name, so a receiver can start from any
  fragment (they arrive in any order)
- 1472-byte ceiling keeps each datagram inside one Ethernet frame
  (1500 MTU - 20 IP - 8 UDP)
"""

import struct
from dataclasses import dataclass
from typing import List, Mapping

from ..errors import ConfigurationError, MalformedDataError

HEADER = struct.Struct('>iii')
HEADER_SIZE = HEADER.size  # 12

MAX_DATAGRAM_SIZE = 1472
MULTICAST_GROUP = "239.255.10.1"
MULTICAST_PORT = 5000


@dataclass(frozen=True)
class Fragment:
    """A decoded broadcast datagram."""
    index: int
    total: int
    name: str
    payload: bytes


def encode_fragment(index: int, total: int, name: str, payload: bytes) -> bytes:
    """Build one datagram."""
    name_bytes = name.encode('utf-8')
    return HEADER.pack(index, total, len(name_bytes)) + name_bytes + payload


def decode_fragment(datagram: bytes) -> Fragment:
    """
    Parse one datagram.

    Raises:
        MalformedDataError: Truncated header, bad lengths, index out of
                            range or an undecodable name
    """
    if len(datagram) < HEADER_SIZE:
        raise MalformedDataError(f"Datagram too short: {len(datagram)} bytes")

    index, total, name_len = HEADER.unpack_from(datagram)

    if total <= 0:
        raise MalformedDataError(f"Invalid fragment total: {total}")
    if not 0 <= index < total:
        raise MalformedDataError(f"Fragment index {index} out of range (total {total})")
    if name_len <= 0 or HEADER_SIZE + name_len > len(datagram):
        raise MalformedDataError(f"Invalid name length: {name_len}")

    name_end = HEADER_SIZE + name_len
    try:
        name = bytes(datagram[HEADER_SIZE:name_end]).decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedDataError(f"Fragment name is not UTF-8: {e}") from e
    if '\x00' in name:
        raise MalformedDataError(f"Fragment name contains a NUL byte: {name!r}")

    return Fragment(index=index, total=total, name=name,
                    payload=bytes(datagram[name_end:]))


def payload_size_for(name: str, max_datagram: int = MAX_DATAGRAM_SIZE) -> int:
    """
    Payload bytes that fit in one datagram next to the header and name.

    Raises:
        ConfigurationError: If the name leaves no room for payload
    """
    size = max_datagram - HEADER_SIZE - len(name.encode('utf-8'))
    if size <= 0:
        raise ConfigurationError(
            f"File name too long for a {max_datagram}-byte datagram: {name!r}"
        )
    return size


def split_fragments(data: bytes, name: str, payload_size: int) -> List[bytes]:
    """
    Cut a file's bytes into encoded datagrams.

    An empty file still yields one (empty) fragment so receivers create it.
    """
    if payload_size <= 0:
        raise ConfigurationError(f"Invalid payload size: {payload_size}")

    total = max(1, (len(data) + payload_size - 1) // payload_size)
    return [
        encode_fragment(i, total, name, data[i * payload_size:(i + 1) * payload_size])
        for i in range(total)
    ]


def assemble_fragments(fragments: Mapping[int, bytes], total: int) -> bytes:
    """Concatenate payloads 0..total-1, skipping indices never received."""
    return b''.join(fragments[i] for i in range(total) if i in fragments)
