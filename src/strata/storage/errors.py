"""Exception types raised by the storage layer."""


class StorageError(Exception):
    """Custom exception for SQLite storage errors."""

    pass


class MigrationError(StorageError):
    """A schema migration failed and was rolled back.

    The database is left at the last successfully applied version. Callers
    should treat this as fatal for the process.
    """

    def __init__(self, version: int, name: str, cause: Exception):
        self.version = version
        self.name = name
        super().__init__(f"Migration {version} ({name}) failed: {cause}")
