"""
Broadcast Module - Best-Effort Multicast File Push

One node pushes a file to every peer on the subnet at once.
"""

from .wire import (
    Fragment,
    assemble_fragments,
    decode_fragment,
    encode_fragment,
    payload_size_for,
    split_fragments,
)
from .sender import BroadcastSender
from .receiver import BroadcastAssembly, BroadcastReceiver

__all__ = [
    'Fragment',
    'assemble_fragments',
    'decode_fragment',
    'encode_fragment',
    'payload_size_for',
    'split_fragments',
    'BroadcastSender',
    'BroadcastAssembly',
    'BroadcastReceiver',
]
