"""Cache exception hierarchy."""


class CacheError(Exception):
    """Base exception for all cache errors."""


class InvalidArgumentError(CacheError, ValueError):
    """Empty key, oversize key, or missing value/factory on a mutating call."""

    def __init__(self, argument: str, message: str):
        self.argument = argument
        super().__init__(f"{argument}: {message}")


class LockTimeoutError(CacheError, TimeoutError):
    """Distributed lock was not granted within the timeout."""

    def __init__(self, resource: str, timeout: float):
        self.resource = resource
        self.timeout = timeout
        super().__init__(f"Could not acquire lock '{resource}' within {timeout:.3f}s")


class StoreError(CacheError):
    """Backing store rejected an operation."""


class StoreUnavailableError(StoreError):
    """Backing store could not be reached."""


class SerializationError(CacheError):
    """Value could not be encoded or decoded."""


class ConfigurationError(CacheError):
    """Invalid cache configuration or unsupported backing dialect."""
