"""
Error taxonomy for the reclamation pipeline
Item-level errors are contained by the orchestrator; only connection setup is fatal
"""


class ReclaimError(Exception):
    """Base class for all pipeline errors"""


class ConfigError(ReclaimError):
    """Invalid or missing configuration value"""


class RemoteStoreError(ReclaimError):
    """Fault reported by the remote document store (retryable by default)"""


class TransientRemoteError(RemoteStoreError):
    """Throttling / HTTP 429 / rate limit response"""


class PermanentRemoteError(RemoteStoreError):
    """Retries exhausted or a fault that must not be retried"""


class LocalIOError(ReclaimError):
    """Scratch filesystem fault while unpacking or repacking a document"""


class DiscoveryError(ReclaimError):
    """Search or enumeration fault"""


class ConnectionSetupError(ReclaimError):
    """Connection to the remote site could not be established"""


class UnconvertibleAssetsError(LocalIOError):
    """Vector images that have no raster counterpart and cannot be rendered"""

    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"cannot convert vector image(s): {', '.join(self.names)}")
