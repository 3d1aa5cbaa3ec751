"""
Memory engine exceptions.

Only I/O-adjacent code raises these. Classification, scoring and
consolidation degrade to defaults instead of raising.
"""


class MemorySystemError(Exception):
    """Base exception for the memory engine."""

    pass


class PersistenceError(MemorySystemError):
    """A read or write against the storage backend failed."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        key: str | None = None,
    ):
        self.operation = operation
        self.key = key
        super().__init__(message)


class ConfigError(MemorySystemError):
    """Configuration could not be loaded."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)
