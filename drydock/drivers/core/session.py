"""
Registry session state shared by all drivers.

A driver holds at most one authenticated registry session at a time. The
session is explicit state rather than a lock: ``open()`` and ``close()`` are
the only transitions, and invalid ones raise ``SessionConflictError``
instead of blocking. Neither method awaits, so a transition is atomic with
respect to other coroutines on the same event loop.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Dict, Optional

from drydock.drivers.core.errors import SessionConflictError
from drydock.drivers.core.utils import registry_of

if TYPE_CHECKING:
    from drydock.drivers.core.base import ContainerDriver

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Registry session state from the driver's perspective."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class RegistryCredentials:
    """Credentials for one registry."""

    registry: str
    username: str
    password: str = ""

    def auth_config(self) -> Dict[str, str]:
        """Return the auth config mapping runtimes expect."""
        return {
            "username": self.username,
            "password": self.password,
            "serveraddress": self.registry,
        }

    def __repr__(self) -> str:
        return (
            f"RegistryCredentials(registry={self.registry!r}, "
            f"username={self.username!r}, password='***')"
        )


class RegistrySession:
    """The single in-flight registry session of a driver instance."""

    def __init__(self) -> None:
        self._credentials: Optional[RegistryCredentials] = None

    @property
    def state(self) -> SessionState:
        if self._credentials is None:
            return SessionState.UNAUTHENTICATED
        return SessionState.AUTHENTICATED

    @property
    def registry(self) -> Optional[str]:
        return self._credentials.registry if self._credentials else None

    @property
    def credentials(self) -> Optional[RegistryCredentials]:
        return self._credentials

    def open(self, repo: str, username: str, password: str) -> RegistryCredentials:
        """
        Authenticate the session against ``repo``'s registry.

        Raises:
            SessionConflictError: If a session is already open
        """
        if self._credentials is not None:
            raise SessionConflictError(
                f"Already logged in to {self._credentials.registry}; "
                "logout must be called before logging in again"
            )
        self._credentials = RegistryCredentials(
            registry=registry_of(repo), username=username, password=password
        )
        logger.debug("Registry session opened for %s", self._credentials.registry)
        return self._credentials

    def close(self, repo: str) -> None:
        """
        Release the session opened for ``repo``'s registry.

        Raises:
            SessionConflictError: If no session is open, or it belongs to
                another registry
        """
        if self._credentials is None:
            raise SessionConflictError(
                f"Cannot logout from {registry_of(repo)}: not logged in"
            )
        registry = registry_of(repo)
        if registry != self._credentials.registry:
            raise SessionConflictError(
                f"Cannot logout from {registry}: session belongs to "
                f"{self._credentials.registry}"
            )
        self._credentials = None
        logger.debug("Registry session closed for %s", registry)

    def credentials_for(self, reference: str) -> Optional[RegistryCredentials]:
        """
        Return the credentials to use for pushing or pulling ``reference``.

        Returns None when no session is open. Transfers against a different
        registry than the open session fail fast so credentials are never
        sent to, or silently withheld from, the wrong registry.

        Raises:
            SessionConflictError: If the session belongs to another registry
        """
        if self._credentials is None:
            return None
        registry = registry_of(reference)
        if registry != self._credentials.registry:
            raise SessionConflictError(
                f"Logged in to {self._credentials.registry}, refusing to "
                f"transfer {reference} from {registry}"
            )
        return self._credentials


@asynccontextmanager
async def registry_session(
    driver: "ContainerDriver", repo: str, username: str, password: str
) -> AsyncIterator["ContainerDriver"]:
    """
    Log ``driver`` in to ``repo``'s registry for the duration of the block.

    Logout runs on every exit path, including when a push or pull inside
    the block fails.

    Example:
        async with registry_session(driver, "registry.example.com/app", user, pw):
            await driver.push("registry.example.com/app:1.0", "")
    """
    await driver.login(repo, username, password)
    try:
        yield driver
    finally:
        await driver.logout(repo)
