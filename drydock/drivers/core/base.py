"""
Abstract base class for container drivers.

This module defines the interface that all container drivers must implement,
enabling an image build pipeline to provision build containers, materialize
and distribute images against Docker, Podman, or an in-memory test double.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import BinaryIO, Mapping, Sequence, Tuple

from packaging.version import Version

# Placeholder in run_command entries that is replaced by the image reference
IMAGE_PLACEHOLDER = "{{.Image}}"


@dataclass(frozen=True)
class ContainerConfig:
    """
    The configuration used to start a build container.

    Sequences are stored as tuples and volumes as a read-only mapping, so a
    config cannot change after it has been handed to a driver. Empty
    sequences and strings mean "no special configuration".
    """

    image: str
    run_command: Tuple[str, ...] = ()
    device: Tuple[str, ...] = ()
    cap_add: Tuple[str, ...] = ()
    cap_drop: Tuple[str, ...] = ()
    volumes: Mapping[str, str] = field(default_factory=dict)
    tmpfs: Tuple[str, ...] = ()
    privileged: bool = False
    runtime: str = ""
    platform: str = ""

    def __post_init__(self) -> None:
        for name in ("run_command", "device", "cap_add", "cap_drop", "tmpfs"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        object.__setattr__(self, "volumes", MappingProxyType(dict(self.volumes)))

    def __hash__(self) -> int:
        # mappingproxy is unhashable, so volumes hash as sorted pairs
        return hash(
            (
                self.image,
                self.run_command,
                self.device,
                self.cap_add,
                self.cap_drop,
                tuple(sorted(self.volumes.items())),
                self.tmpfs,
                self.privileged,
                self.runtime,
                self.platform,
            )
        )

    def rendered_command(self) -> Tuple[str, ...]:
        """Return run_command with the image placeholder filled in."""
        return tuple(
            arg.replace(IMAGE_PLACEHOLDER, self.image) for arg in self.run_command
        )


class ContainerDriver(ABC):
    """
    Abstract base class for container runtime drivers.

    Implementations of this class talk to one backing runtime. Every method
    raises a ``DriverError`` subclass on failure and never retries; stream
    errors from export/save destinations propagate unchanged.

    ``login``/``logout`` bracket a single registry session per driver
    instance. Callers MUST call ``logout`` after a successful ``login``,
    also when a push or pull in between fails (see ``registry_session``).
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the container runtime client.

        Raises:
            RuntimeUnavailableError: If the runtime cannot be reached
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the container runtime client and cleanup resources."""
        pass

    # Readiness

    @abstractmethod
    async def verify(self) -> None:
        """
        Check that the driver can run.

        Cheap readiness check called once before any lifecycle operation.

        Raises:
            RuntimeUnavailableError: If the runtime is unreachable or older
                than the configured minimum version
        """
        pass

    @abstractmethod
    async def version(self) -> Version:
        """Return the runtime's version."""
        pass

    # Container lifecycle

    @abstractmethod
    async def start_container(self, config: ContainerConfig) -> str:
        """
        Create and start a container.

        Args:
            config: How to start the container

        Returns:
            The ID of the started container

        Raises:
            InvalidContainerConfigError: If config.image is empty
            ImageNotFoundError: If the image cannot be resolved
            RuntimeUnavailableError: If the runtime is unreachable

        A container that was created but could not be started is removed
        before the error is raised.
        """
        pass

    @abstractmethod
    async def kill_container(self, container_id: str) -> None:
        """Forcibly stop and remove a container."""
        pass

    @abstractmethod
    async def stop_container(self, container_id: str) -> None:
        """
        Gently stop and remove a container.

        The runtime kills the container if it has not exited after
        ``settings.stop_timeout`` seconds.
        """
        pass

    @abstractmethod
    async def ip_address(self, container_id: str) -> str:
        """
        Return the address of a running container for external access.

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerNotRunningError: If the container is not running
            ContainerIPAddressError: If the container has no network address
        """
        pass

    # Image materialization

    @abstractmethod
    async def commit(
        self, container_id: str, author: str, changes: Sequence[str], message: str
    ) -> str:
        """
        Commit the container's filesystem to a new image.

        Args:
            container_id: The container to commit
            author: Author recorded in the image metadata
            changes: Dockerfile instructions applied to the image config
                (e.g. ``ENTRYPOINT ["/bin/sh"]``, ``ENV FOO=bar``)
            message: Commit message

        Returns:
            The new image ID
        """
        pass

    @abstractmethod
    async def export(self, container_id: str, dst: BinaryIO) -> None:
        """Write the container's filesystem as a tar archive into dst."""
        pass

    @abstractmethod
    async def import_image(
        self, path: str, changes: Sequence[str], repo: str, platform: str
    ) -> str:
        """
        Import an image from a tar archive.

        Returns:
            The new image ID
        """
        pass

    @abstractmethod
    async def save_image(self, image_id: str, dst: BinaryIO) -> None:
        """Write the full image as a tar archive into dst."""
        pass

    @abstractmethod
    async def sha256(self, image_id: str) -> str:
        """Return the local content ID (``sha256:...``) of the image."""
        pass

    @abstractmethod
    async def digest(self, image_id: str) -> str:
        """
        Return the repo digest of the image.

        Returns an empty string for images that were never pushed to or
        pulled from a registry.
        """
        pass

    @abstractmethod
    async def delete_image(self, image_id: str) -> None:
        """Delete an image reference."""
        pass

    @abstractmethod
    async def tag_image(self, image_id: str, repo: str, force: bool) -> None:
        """
        Tag the image with the given ID as ``repo``.

        Raises:
            ImageConflictError: If force is false and repo already refers
                to a different image
        """
        pass

    # Registry session and distribution

    @abstractmethod
    async def login(self, repo: str, username: str, password: str) -> None:
        """
        Log in to the registry of ``repo``.

        This locks the driver from performing another login until logout
        is called.

        Raises:
            SessionConflictError: If a session is already open
            RegistryAuthError: If the registry rejects the credentials
        """
        pass

    @abstractmethod
    async def logout(self, repo: str) -> None:
        """
        Log out from the registry of ``repo``.

        Raises:
            SessionConflictError: If login did not succeed before
        """
        pass

    @abstractmethod
    async def pull(self, image: str, platform: str) -> None:
        """Pull the given image, using the open session if it matches."""
        pass

    @abstractmethod
    async def push(self, name: str, platform: str) -> None:
        """Push an image to its registry, using the open session if it matches."""
        pass
