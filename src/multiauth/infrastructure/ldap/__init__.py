"""Directory access for the LDAP provider."""

from .directory import (
    ConnectionFactory,
    DirectoryConnection,
    DirectoryConnectionPool,
    DirectoryEntry,
    DirectoryError,
    MemoryDirectory,
    MemoryDirectoryConnection,
    parse_filter,
)

__all__ = [
    "ConnectionFactory",
    "DirectoryConnection",
    "DirectoryConnectionPool",
    "DirectoryEntry",
    "DirectoryError",
    "MemoryDirectory",
    "MemoryDirectoryConnection",
    "parse_filter",
]
