"""
User directory.

Holds the profiles of users who completed sign-in at least once. The
directory is injected wherever users are looked up, so the in-memory store
can be replaced by a persistent one without touching the auth code.
"""

import logging
import threading
from typing import List, Optional, Protocol, Tuple

from .models import UserProfile

logger = logging.getLogger("aad_signin.users")


class UserRepository(Protocol):
    """Storage capability needed by the verify callback and the serializer."""

    def find(self, oid: str) -> Optional[UserProfile]:
        ...

    def insert(self, profile: UserProfile) -> UserProfile:
        ...

    def find_or_insert(self, profile: UserProfile) -> Tuple[UserProfile, bool]:
        ...


class InMemoryUserRepository:
    """
    Process-local, append-only user directory.

    Starts empty and is lost on restart. Entries are unique by ``oid``;
    ``find`` returns the stored instance, not a copy.
    """

    def __init__(self) -> None:
        self._users: List[UserProfile] = []
        self._by_oid = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._users)

    def all(self) -> List[UserProfile]:
        with self._lock:
            return list(self._users)

    def find(self, oid: str) -> Optional[UserProfile]:
        if not oid:
            return None
        with self._lock:
            return self._by_oid.get(oid)

    def insert(self, profile: UserProfile) -> UserProfile:
        """
        Add a profile to the directory.

        Raises:
            ValueError: If a profile with the same oid is already stored
        """
        with self._lock:
            if profile.oid in self._by_oid:
                raise ValueError(f"User {profile.oid} is already registered")
            self._append(profile)
        return profile

    def find_or_insert(self, profile: UserProfile) -> Tuple[UserProfile, bool]:
        """
        Return the stored profile for ``profile.oid``, registering it if absent.

        Returns:
            (user, created) where ``created`` is True on registration
        """
        with self._lock:
            existing = self._by_oid.get(profile.oid)
            if existing is not None:
                return existing, False
            self._append(profile)
        return profile, True

    def _append(self, profile: UserProfile) -> None:
        # Caller holds the lock
        self._users.append(profile)
        self._by_oid[profile.oid] = profile
        logger.info(f"Registered user {profile.oid}", extra={"oid": profile.oid})


def find_user(repository: UserRepository, oid: str) -> Optional[UserProfile]:
    """Resolve an oid to a stored user; None means the user is not registered."""
    return repository.find(oid)
