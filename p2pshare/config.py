"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
import json

from dotenv import load_dotenv

from .errors import ConfigurationError
from .transfer.peers import PeerAddress, parse_peers
from .transfer.server import default_workers

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Config:
    """
    Peer Node Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (P2P_*, a .env file is loaded first)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    transfer_port: int = 8080  # catalog handshake listens on transfer_port + 1

    # Storage
    shared_dir: Path = field(default_factory=lambda: Path('./file'))
    download_dir: Optional[Path] = None  # defaults to shared_dir

    # Chunking
    chunk_size: int = 2 * 1024 * 1024  # 2MB

    # Server
    rate_limit: float = 1000.0  # chunk requests per second
    server_workers: int = field(default_factory=default_workers)

    # Client
    max_concurrent_downloads: int = 8
    max_chunk_attempts: int = 3
    sync_fast_path: bool = True

    # Timeouts (seconds)
    metadata_timeout: float = 5.0
    chunk_timeout: float = 10.0
    handshake_timeout: float = 5.0
    progress_interval: float = 0.5

    # Broadcast
    multicast_group: str = '239.255.10.1'
    multicast_port: int = 5000
    max_datagram_size: int = 1472
    broadcast_send_delay: float = 0.001
    broadcast_assembly_timeout: float = 30.0  # idle seconds before a partial push is dropped
    receive_broadcasts: bool = False

    # Peers (host:port of each peer's transfer server)
    peers: List[str] = field(default_factory=list)

    # Logging
    log_level: str = 'INFO'

    @property
    def downloads(self) -> Path:
        """Effective download directory."""
        return self.download_dir or self.shared_dir

    def peer_addresses(self) -> List[PeerAddress]:
        return parse_peers(self.peers)

    def validate(self) -> 'Config':
        """
        Check value ranges.

        Raises:
            ConfigurationError: On the first invalid value
        """
        def number(name: str, types) -> Any:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, types):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
            return value

        for name in ('transfer_port', 'multicast_port'):
            port = number(name, int)
            if not 0 < port <= 65535:
                raise ConfigurationError(f"{name} out of range: {port}")

        for name in ('chunk_size', 'server_workers', 'max_concurrent_downloads',
                     'max_chunk_attempts', 'max_datagram_size'):
            if number(name, int) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        for name in ('rate_limit', 'metadata_timeout', 'chunk_timeout',
                     'handshake_timeout', 'progress_interval',
                     'broadcast_assembly_timeout'):
            if number(name, (int, float)) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        if number('broadcast_send_delay', (int, float)) < 0:
            raise ConfigurationError("broadcast_send_delay must not be negative")

        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

        if not all(isinstance(p, str) for p in self.peers):
            raise ConfigurationError("peers must be a list of host:port strings")
        self.peer_addresses()
        return self

    @classmethod
    def from_env(cls, base: Optional['Config'] = None) -> 'Config':
        """
        Load configuration from environment variables.

        Only variables that are set override `base` (defaults if not given).
        """
        load_dotenv()

        config = base or cls()

        def env(name: str, convert: Callable[[str], Any], attr: str):
            raw = os.getenv(name)
            if raw is None or raw == '':
                return
            try:
                setattr(config, attr, convert(raw))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e

        # Network
        env('P2P_HOST', str, 'host')
        env('P2P_TRANSFER_PORT', int, 'transfer_port')

        # Storage
        env('P2P_SHARED_DIR', Path, 'shared_dir')
        env('P2P_DOWNLOAD_DIR', Path, 'download_dir')

        # Chunking / server
        env('P2P_CHUNK_SIZE', int, 'chunk_size')
        env('P2P_RATE_LIMIT', float, 'rate_limit')
        env('P2P_SERVER_WORKERS', int, 'server_workers')

        # Client
        env('P2P_MAX_CONCURRENT', int, 'max_concurrent_downloads')
        env('P2P_MAX_CHUNK_ATTEMPTS', int, 'max_chunk_attempts')
        env('P2P_SYNC_FAST_PATH', _parse_bool, 'sync_fast_path')

        # Timeouts
        env('P2P_METADATA_TIMEOUT', float, 'metadata_timeout')
        env('P2P_CHUNK_TIMEOUT', float, 'chunk_timeout')
        env('P2P_HANDSHAKE_TIMEOUT', float, 'handshake_timeout')
        env('P2P_PROGRESS_INTERVAL', float, 'progress_interval')

        # Broadcast
        env('P2P_MULTICAST_GROUP', str, 'multicast_group')
        env('P2P_MULTICAST_PORT', int, 'multicast_port')
        env('P2P_MAX_DATAGRAM_SIZE', int, 'max_datagram_size')
        env('P2P_BROADCAST_SEND_DELAY', float, 'broadcast_send_delay')
        env('P2P_BROADCAST_ASSEMBLY_TIMEOUT', float, 'broadcast_assembly_timeout')
        env('P2P_RECEIVE_BROADCASTS', _parse_bool, 'receive_broadcasts')

        # Logging
        env('P2P_LOG_LEVEL', str, 'log_level')

        # Peers are additive
        peers = os.getenv('P2P_PEERS', '')
        if peers:
            config.peers = config.peers + [p.strip() for p in peers.split(',') if p.strip()]

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.transfer_port = data.get('transfer_port', config.transfer_port)

        # Storage
        if 'shared_dir' in data:
            config.shared_dir = Path(data['shared_dir'])
        if data.get('download_dir'):
            config.download_dir = Path(data['download_dir'])

        # Chunking / server
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.rate_limit = data.get('rate_limit', config.rate_limit)
        config.server_workers = data.get('server_workers', config.server_workers)

        # Client
        config.max_concurrent_downloads = data.get(
            'max_concurrent_downloads', config.max_concurrent_downloads
        )
        config.max_chunk_attempts = data.get('max_chunk_attempts', config.max_chunk_attempts)
        config.sync_fast_path = data.get('sync_fast_path', config.sync_fast_path)

        # Timeouts
        config.metadata_timeout = data.get('metadata_timeout', config.metadata_timeout)
        config.chunk_timeout = data.get('chunk_timeout', config.chunk_timeout)
        config.handshake_timeout = data.get('handshake_timeout', config.handshake_timeout)
        config.progress_interval = data.get('progress_interval', config.progress_interval)

        # Broadcast
        config.multicast_group = data.get('multicast_group', config.multicast_group)
        config.multicast_port = data.get('multicast_port', config.multicast_port)
        config.max_datagram_size = data.get('max_datagram_size', config.max_datagram_size)
        config.broadcast_send_delay = data.get('broadcast_send_delay', config.broadcast_send_delay)
        config.broadcast_assembly_timeout = data.get(
            'broadcast_assembly_timeout', config.broadcast_assembly_timeout
        )
        config.receive_broadcasts = data.get('receive_broadcasts', config.receive_broadcasts)

        # Peers
        config.peers = list(data.get('peers', []))

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'transfer_port': self.transfer_port,
            'shared_dir': str(self.shared_dir),
            'download_dir': str(self.download_dir) if self.download_dir else None,
            'chunk_size': self.chunk_size,
            'rate_limit': self.rate_limit,
            'server_workers': self.server_workers,
            'max_concurrent_downloads': self.max_concurrent_downloads,
            'max_chunk_attempts': self.max_chunk_attempts,
            'sync_fast_path': self.sync_fast_path,
            'metadata_timeout': self.metadata_timeout,
            'chunk_timeout': self.chunk_timeout,
            'handshake_timeout': self.handshake_timeout,
            'progress_interval': self.progress_interval,
            'multicast_group': self.multicast_group,
            'multicast_port': self.multicast_port,
            'max_datagram_size': self.max_datagram_size,
            'broadcast_send_delay': self.broadcast_send_delay,
            'broadcast_assembly_timeout': self.broadcast_assembly_timeout,
            'receive_broadcasts': self.receive_broadcasts,
            'peers': list(self.peers),
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.

    Raises:
        ConfigurationError: If any resulting value is invalid
    """
    # Start with defaults, or the file if provided
    config = Config()
    if config_path and Path(config_path).exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    config = Config.from_env(base=config)

    return config.validate()


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "transfer_port": 8080,
  "shared_dir": "./file",
  "chunk_size": 2097152,
  "rate_limit": 1000,
  "max_concurrent_downloads": 8,
  "max_chunk_attempts": 3,
  "peers": ["192.168.1.100:8080", "192.168.1.101:8080"],
  "log_level": "INFO"
}
"""
