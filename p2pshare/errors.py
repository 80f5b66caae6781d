"""
Error Taxonomy

Every failure the sharing engine reports derives from P2PShareError so
callers can catch the whole family at the CLI/node boundary.

| Error                 | Meaning                               | Handling               |
|-----------------------|---------------------------------------|------------------------|
| ConfigurationError    | Bad setting / missing hash algorithm  | Fatal, never retried   |
| ProtocolVersionError  | Peer speaks an unsupported version    | Reject the document    |
| MalformedDataError    | Structurally invalid document/packet  | Reject the document    |
| NetworkError          | Connect/read/status failure           | Retried per chunk      |
| HashMismatchError     | Content hash did not match            | Retried per chunk      |
| RateLimitedError      | Peer answered 429                     | Caller backs off       |
| PathTraversalError    | Chunk name escapes the sandbox        | Request rejected       |
| NoMetadataAvailable   | No peer returned usable metadata      | Fatal for the fetch    |
"""


class P2PShareError(Exception):
    """Base class for all p2pshare errors."""
    pass


class ConfigurationError(P2PShareError):
    """
    Raised for invalid configuration or an unavailable hash algorithm.
    """
    pass


class ProtocolVersionError(P2PShareError):
    """
    Raised when a catalog document carries an unsupported protocol version.
    """

    def __init__(self, version, supported: str):
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported protocol version {version!r} (supported: {supported})"
        )


class MalformedDataError(P2PShareError, ValueError):
    """
    Raised when a metadata document, catalog or datagram is structurally invalid.
    """
    pass


class NetworkError(P2PShareError):
    """
    Raised when a peer cannot be reached or answers with an error status.
    """
    pass


class HashMismatchError(P2PShareError):
    """
    Raised when received or assembled bytes do not hash to the expected value.
    """

    def __init__(self, message: str, expected: str = "", actual: str = ""):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class RateLimitedError(NetworkError):
    """
    Raised when a peer rejects a request with "too many requests".
    """
    pass


class PathTraversalError(P2PShareError):
    """
    Raised when a requested chunk path resolves outside the sandbox root.
    """
    pass


class NoMetadataAvailable(P2PShareError):
    """
    Raised when no peer in the pool returned a parseable metadata document.
    """
    pass
