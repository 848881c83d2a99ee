"""User Directory

Purpose: Pluggable user-authentication check behind the session store

The session store does not own identities; it asks a UserDirectory to
verify email/password pairs and to record registrations. The in-memory
implementation hashes passwords with bcrypt and issues one-time
activation codes.

Key Components:
- UserRecord: Registered identity
- UserDirectory: Abstract verification/registration backend
- MemoryUserDirectory: In-process implementation
"""

import asyncio
import hashlib
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

import bcrypt

from multiauth.domain.models import utc_now

logger = logging.getLogger(__name__)


class UserExistsError(Exception):
    """Registration for an email that is already registered"""
    pass


@dataclass
class UserRecord:
    """Registered identity

    Attributes:
        user_id: Unique identifier
        email: Normalized (lower-case) email address
        username: Display handle
        password_hash: bcrypt hash, empty for identities not stored here
        created_at: Registration time
        is_active: Account may sign in
        is_verified: Activation code was redeemed
        roles: Roles granted to the user
    """
    user_id: str
    email: str
    username: str
    password_hash: bytes = b""
    created_at: datetime = field(default_factory=utc_now)
    is_active: bool = True
    is_verified: bool = False
    roles: list[str] = field(default_factory=lambda: ["user"])


class UserDirectory(ABC):
    """Verifies credentials and records registrations"""

    @abstractmethod
    async def verify(self, email: str, password: str) -> Optional[UserRecord]:
        """Return the user if the password matches, None otherwise"""
        pass

    @abstractmethod
    async def register(
        self, email: str, password: str, username: Optional[str] = None
    ) -> tuple[UserRecord, str]:
        """Create a user and return it with its activation code

        Raises:
            UserExistsError: If the email is already registered
        """
        pass

    @abstractmethod
    async def activate(self, code: str) -> Optional[UserRecord]:
        """Redeem an activation code. Returns None for unknown codes."""
        pass


class MemoryUserDirectory(UserDirectory):
    """In-process user directory.

    With accept_unknown_users=True, any non-empty email/password pair for
    an email that was never registered is admitted, standing in for an
    external identity backend. Registered users are always checked
    against their bcrypt hash.
    """

    def __init__(
        self,
        accept_unknown_users: bool = True,
        bcrypt_rounds: int = 12,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.accept_unknown_users = accept_unknown_users
        self.bcrypt_rounds = bcrypt_rounds
        self._clock = clock or utc_now
        self._users: Dict[str, UserRecord] = {}
        self._activation_codes: Dict[str, str] = {}  # code -> email
        self._lock = asyncio.Lock()

    @staticmethod
    def _normalize(email: str) -> str:
        return email.strip().lower()

    async def get(self, email: str) -> Optional[UserRecord]:
        return self._users.get(self._normalize(email))

    async def verify(self, email: str, password: str) -> Optional[UserRecord]:
        if not email or not password:
            return None

        user = self._users.get(self._normalize(email))
        if user is None:
            if not self.accept_unknown_users:
                return None
            digest = hashlib.sha256(self._normalize(email).encode("utf-8")).hexdigest()
            return UserRecord(
                user_id=f"user_{digest[:16]}",
                email=self._normalize(email),
                username=self._normalize(email).split("@", 1)[0],
                created_at=self._clock(),
            )

        if not bcrypt.checkpw(password.encode("utf-8"), user.password_hash):
            logger.warning(f"Password mismatch for {user.user_id}")
            return None
        return user

    async def register(
        self, email: str, password: str, username: Optional[str] = None
    ) -> tuple[UserRecord, str]:
        normalized = self._normalize(email)
        async with self._lock:
            if normalized in self._users:
                raise UserExistsError(f"User {normalized} already registered")

            password_hash = bcrypt.hashpw(
                password.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)
            )
            user = UserRecord(
                user_id=str(uuid.uuid4()),
                email=normalized,
                username=username or normalized.split("@", 1)[0],
                password_hash=password_hash,
                created_at=self._clock(),
            )
            code = secrets.token_urlsafe(24)
            self._users[normalized] = user
            self._activation_codes[code] = normalized

        logger.info(f"Registered user {user.user_id}")
        return user, code

    async def activate(self, code: str) -> Optional[UserRecord]:
        email = self._activation_codes.pop(code, None)
        if email is None:
            return None
        user = self._users[email]
        user.is_verified = True
        logger.info(f"Activated user {user.user_id}")
        return user
