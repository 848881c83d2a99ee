"""Directory connections.

The LDAP provider talks to a directory through DirectoryConnection:
connect, bind, search, close. MemoryDirectory is an in-process directory
server that answers equality, presence, substring, AND, OR and NOT
filters (RFC 4515 escapes honored). Deployments plug a connection backed
by their LDAP client library into the same interface.
"""

import logging
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

from multiauth.domain.models import LdapProviderConfig

logger = logging.getLogger(__name__)

SearchResult = list[tuple[str, Dict[str, list[str]]]]


class DirectoryError(Exception):
    """Directory unreachable or protocol failure"""
    pass


class DirectoryConnection(ABC):
    """One connection to a directory server"""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection

        Raises:
            DirectoryError: If the server cannot be reached
        """
        pass

    @abstractmethod
    async def bind(self, dn: str, password: str) -> bool:
        """Simple bind. Returns False on invalid credentials."""
        pass

    @abstractmethod
    async def search(
        self, base: str, filter_str: str, attributes: Optional[Iterable[str]] = None
    ) -> SearchResult:
        """Subtree search under base. Returns (dn, attributes) pairs."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass


def normalize_dn(dn: str) -> str:
    return ",".join(part.strip().lower() for part in dn.split(","))


def unescape_filter_value(value: str) -> str:
    return re.sub(r"\\([0-9a-fA-F]{2})", lambda m: chr(int(m.group(1), 16)), value)


@dataclass
class DirectoryEntry:
    dn: str
    attributes: Dict[str, list[str]] = field(default_factory=dict)
    password: Optional[str] = field(default=None, repr=False)

    def values(self, name: str) -> list[str]:
        for key, values in self.attributes.items():
            if key.lower() == name.lower():
                return values
        return []


class MemoryDirectory:
    """In-process directory server"""

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self._entries: Dict[str, DirectoryEntry] = {}

    def add_entry(
        self,
        dn: str,
        attributes: Dict[str, Iterable[str] | str],
        password: Optional[str] = None
    ) -> DirectoryEntry:
        entry = DirectoryEntry(
            dn=dn,
            attributes={
                name: [value] if isinstance(value, str) else list(value)
                for name, value in attributes.items()
            },
            password=password,
        )
        self._entries[normalize_dn(dn)] = entry
        return entry

    def get_entry(self, dn: str) -> Optional[DirectoryEntry]:
        return self._entries.get(normalize_dn(dn))

    def check_password(self, dn: str, password: str) -> bool:
        entry = self.get_entry(dn)
        if entry is None or not entry.password or not password:
            return False
        return secrets.compare_digest(entry.password.encode("utf-8"), password.encode("utf-8"))

    def search(self, base: str, filter_str: str) -> list[DirectoryEntry]:
        predicate = parse_filter(filter_str)
        suffix = normalize_dn(base)
        return [
            entry for key, entry in self._entries.items()
            if (key == suffix or key.endswith("," + suffix)) and predicate(entry)
        ]


Predicate = Callable[[DirectoryEntry], bool]


def parse_filter(filter_str: str) -> Predicate:
    """Compile an LDAP filter string into a predicate

    Raises:
        DirectoryError: If the filter is malformed
    """
    text = filter_str.strip()
    if not (text.startswith("(") and text.endswith(")")):
        raise DirectoryError(f"Malformed filter: {filter_str}")
    inner = text[1:-1]
    if not inner:
        raise DirectoryError(f"Empty filter: {filter_str}")

    if inner[0] in "&|":
        children = [parse_filter(child) for child in _split_components(inner[1:])]
        if inner[0] == "&":
            return lambda entry: all(child(entry) for child in children)
        return lambda entry: any(child(entry) for child in children)
    if inner[0] == "!":
        child = parse_filter(inner[1:])
        return lambda entry: not child(entry)

    attribute, sep, raw_value = inner.partition("=")
    if not sep or not attribute:
        raise DirectoryError(f"Malformed filter component: {filter_str}")

    if raw_value == "*":
        return lambda entry: bool(entry.values(attribute))

    pattern = re.compile(
        ".*".join(re.escape(unescape_filter_value(part)) for part in raw_value.split("*")),
        re.IGNORECASE,
    )
    return lambda entry: any(pattern.fullmatch(value) for value in entry.values(attribute))


def _split_components(text: str) -> list[str]:
    components, depth, start = [], 0, 0
    for index, char in enumerate(text):
        if char == "(":
            if depth == 0:
                start = index
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                components.append(text[start:index + 1])
            elif depth < 0:
                raise DirectoryError(f"Unbalanced filter: {text}")
    if depth != 0 or not components:
        raise DirectoryError(f"Unbalanced filter: {text}")
    return components


class MemoryDirectoryConnection(DirectoryConnection):
    """Connection to a MemoryDirectory"""

    def __init__(self, directory: MemoryDirectory, config: LdapProviderConfig):
        self.directory = directory
        self.config = config
        self.bound_dn: Optional[str] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if not self.directory.reachable:
            raise DirectoryError(f"Cannot reach directory at {self.config.pool_key}")
        logger.debug(f"Connecting to LDAP server: {self.config.url}:{self.config.port}")
        self._connected = True

    async def bind(self, dn: str, password: str) -> bool:
        if not self._connected:
            raise DirectoryError("Bind on a closed connection")
        self.bound_dn = None
        if not self.directory.check_password(dn, password):
            return False
        self.bound_dn = dn
        return True

    async def search(
        self, base: str, filter_str: str, attributes: Optional[Iterable[str]] = None
    ) -> SearchResult:
        if not self._connected:
            raise DirectoryError("Search on a closed connection")
        wanted = {name.lower() for name in attributes} if attributes else None
        results: SearchResult = []
        for entry in self.directory.search(base, filter_str):
            attrs = {
                name: list(values) for name, values in entry.attributes.items()
                if wanted is None or name.lower() in wanted
            }
            results.append((entry.dn, attrs))
        return results

    async def close(self) -> None:
        self._connected = False
        self.bound_dn = None


ConnectionFactory = Callable[[LdapProviderConfig], DirectoryConnection]


class DirectoryConnectionPool:
    """Connections pooled per host:port.

    Idle connections are reused instead of re-handshaking; at most
    config.max_connections idle connections are kept per server.
    """

    def __init__(self, factory: ConnectionFactory):
        self.factory = factory
        self._idle: Dict[str, list[DirectoryConnection]] = {}
        self.created = 0

    async def acquire(self, config: LdapProviderConfig) -> DirectoryConnection:
        idle = self._idle.get(config.pool_key, [])
        while idle:
            connection = idle.pop()
            if connection.connected:
                return connection

        connection = self.factory(config)
        await connection.connect()
        self.created += 1
        logger.debug(f"Opened LDAP connection to {config.pool_key}")
        return connection

    async def release(self, config: LdapProviderConfig, connection: DirectoryConnection) -> None:
        idle = self._idle.setdefault(config.pool_key, [])
        if connection.connected and len(idle) < config.max_connections:
            idle.append(connection)
        else:
            await connection.close()

    def idle_count(self, pool_key: str) -> int:
        return len(self._idle.get(pool_key, []))

    async def close_all(self) -> None:
        for connections in self._idle.values():
            for connection in connections:
                await connection.close()
        self._idle.clear()
