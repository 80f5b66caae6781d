"""
p2pshare - LAN peer-to-peer file sharing.

Nodes chunk their shared files, exchange content-addressed catalogs, pull
missing files chunk by chunk with hash verification, and can push a file
to the whole subnet by multicast.
"""

__version__ = "1.0.0"
