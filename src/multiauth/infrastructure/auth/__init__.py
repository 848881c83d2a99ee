"""Identity backends."""

from .user_directory import MemoryUserDirectory, UserDirectory, UserExistsError, UserRecord

__all__ = ["MemoryUserDirectory", "UserDirectory", "UserExistsError", "UserRecord"]
