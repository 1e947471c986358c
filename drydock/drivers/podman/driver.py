"""
Podman container driver implementation.

This module implements the ContainerDriver interface using Podman (via podman-py).
Podman is API-compatible with Docker, so the implementation mirrors
DockerDriver, talking to the Podman UNIX socket.
"""

from __future__ import annotations

import asyncio
import os
import json
import logging
import urllib.parse
from typing import Any, BinaryIO, Callable, Dict, Optional, Sequence, TypeVar

import requests
from packaging.version import Version
from podman import PodmanClient
from podman.api import encode_auth_header
from podman.errors import APIError, ImageNotFound, NotFound, PodmanError

from drydock.config import settings
from drydock.drivers.core.base import ContainerConfig, ContainerDriver
from drydock.drivers.core.errors import (
    ContainerIPAddressError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    DriverError,
    ImageConflictError,
    ImageNotFoundError,
    InvalidContainerConfigError,
    RegistryAuthError,
    RuntimeUnavailableError,
)
from drydock.drivers.core.session import RegistryCredentials, RegistrySession
from drydock.drivers.core.utils import (
    parse_runtime_version,
    parse_tmpfs,
    registry_of,
    split_reference,
    write_chunks,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "401")


def get_podman_socket() -> str:
    """
    Return the path to the Podman socket.

    For rootless Podman, the socket is typically in XDG_RUNTIME_DIR.
    """
    xdg = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    return f"unix://{xdg}/podman/podman.sock"


def _status_code(e: Exception) -> Optional[int]:
    return getattr(e, "status_code", None)


class PodmanDriver(ContainerDriver):
    """
    Podman implementation of the ContainerDriver interface.

    podman-py is synchronous, so every call runs in the default executor to
    avoid blocking the event loop.

    Configuration:
        - Set DRYDOCK_CONTAINER_DRIVER=podman
        - Optionally DRYDOCK_PODMAN_URL (defaults to the rootless socket)
    """

    runtime_name = "podman"

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url if url is not None else settings.podman_url
        self.client: Optional[PodmanClient] = None
        self.session = RegistrySession()

    async def _run_sync(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a synchronous function in an executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def initialize(self) -> None:
        """Initialize Podman client."""
        if self.client:
            return

        socket = self.url or get_podman_socket()
        try:
            self.client = await self._run_sync(PodmanClient, base_url=socket)
            await self._run_sync(self.client.version)
            logger.info(
                "%s initialized successfully (socket: %s)",
                self.__class__.__name__,
                socket,
            )
        except (PodmanError, requests.exceptions.RequestException, OSError) as e:
            logger.error("Failed to initialize %s: %s", self.__class__.__name__, e)
            if self.client:
                await self._run_sync(self.client.close)
                self.client = None
            raise RuntimeUnavailableError(self.runtime_name, str(e)) from e

    async def close(self) -> None:
        """Close Podman client."""
        if self.client:
            await self._run_sync(self.client.close)
            self.client = None

    async def _get_client(self) -> PodmanClient:
        if not self.client:
            await self.initialize()
        assert self.client is not None
        return self.client

    def _translate(self, e: Exception, ref: str, kind: str = "container") -> DriverError:
        """Map a podman-py/requests exception onto the driver error hierarchy."""
        if isinstance(e, requests.exceptions.ConnectionError):
            return RuntimeUnavailableError(self.runtime_name, str(e))
        if isinstance(e, (NotFound, ImageNotFound)) or "no such" in str(e).lower():
            if kind == "image":
                return ImageNotFoundError(ref, str(e))
            return ContainerNotFoundError(ref, str(e))
        status = _status_code(e)
        if status == 409 and kind == "image":
            return ImageConflictError(ref, str(e))
        if status in (401, 403):
            return RegistryAuthError(registry_of(ref), str(e))
        return DriverError(f"Podman error on {ref}: {e}")

    # Readiness

    async def verify(self) -> None:
        """Verify the service answers and satisfies the minimum version."""
        current = await self.version()
        if settings.min_runtime_version:
            required = parse_runtime_version(settings.min_runtime_version)
            if current < required:
                raise RuntimeUnavailableError(
                    self.runtime_name,
                    f"version {current} is older than required {required}",
                )
        logger.info("Podman %s verified", current)

    async def version(self) -> Version:
        """Read the Podman version."""
        client = await self._get_client()
        try:
            info = await self._run_sync(client.version)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to read Podman version: %s", e)
            raise RuntimeUnavailableError(self.runtime_name, str(e)) from e
        return parse_runtime_version(info.get("Version", ""))

    # Container lifecycle

    def _build_container_config(self, config: ContainerConfig) -> Dict[str, Any]:
        """Build kwargs for containers.create()."""
        kwargs: Dict[str, Any] = {
            "image": config.image,
            "tty": True,
            "stdin_open": True,
            "labels": {"created_by": "drydock"},
            "privileged": config.privileged,
            "volumes": {
                host: {"bind": target, "mode": "rw"}
                for host, target in config.volumes.items()
            },
        }
        command = config.rendered_command()
        if command:
            kwargs["command"] = list(command)
        if config.device:
            kwargs["devices"] = list(config.device)
        if config.cap_add:
            kwargs["cap_add"] = list(config.cap_add)
        if config.cap_drop:
            kwargs["cap_drop"] = list(config.cap_drop)
        if config.tmpfs:
            kwargs["tmpfs"] = parse_tmpfs(config.tmpfs)
        if config.runtime:
            kwargs["runtime"] = config.runtime
        if config.platform:
            kwargs["platform"] = config.platform
        return kwargs

    async def start_container(self, config: ContainerConfig) -> str:
        """Create and start a build container using Podman."""
        if not config.image:
            raise InvalidContainerConfigError("ContainerConfig.image must not be empty")

        client = await self._get_client()
        kwargs = self._build_container_config(config)

        try:
            container = await self._run_sync(client.containers.create, **kwargs)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to create container from %s: %s", config.image, e)
            raise self._translate(e, config.image, kind="image") from e

        try:
            await self._run_sync(container.start)
        except BaseException as e:
            logger.error("Failed to start container %s: %r", container.id, e)
            # Nothing references the created container, also when the caller
            # cancelled the start
            await asyncio.shield(self._remove_created(container))
            if isinstance(e, (PodmanError, requests.exceptions.RequestException)):
                raise self._translate(e, container.id) from e
            raise

        logger.info("Started container %s from %s", container.id, config.image)
        return container.id

    async def _remove_created(self, container: Any) -> None:
        try:
            await self._run_sync(container.remove, force=True)
        except (PodmanError, requests.exceptions.RequestException) as cleanup_error:
            logger.warning(
                "Failed to cleanup container %s after start error: %s",
                container.id,
                cleanup_error,
            )

    async def _get_container(self, container_id: str) -> Any:
        client = await self._get_client()
        try:
            return await self._run_sync(client.containers.get, container_id)
        except (PodmanError, requests.exceptions.RequestException) as e:
            raise self._translate(e, container_id) from e

    async def kill_container(self, container_id: str) -> None:
        """Kill and remove a container."""
        container = await self._get_container(container_id)
        try:
            await self._run_sync(container.kill)
            await self._run_sync(container.remove, force=True)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to kill container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

    async def stop_container(self, container_id: str) -> None:
        """Stop and remove a container, allowing settings.stop_timeout seconds to exit."""
        container = await self._get_container(container_id)
        try:
            await self._run_sync(container.stop, timeout=settings.stop_timeout)
            await self._run_sync(container.remove)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to stop container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

    async def ip_address(self, container_id: str) -> str:
        """Return the container's address on its Podman network."""
        container = await self._get_container(container_id)
        try:
            await self._run_sync(container.reload)
        except (PodmanError, requests.exceptions.RequestException) as e:
            raise self._translate(e, container_id) from e

        if container.status != "running":
            raise ContainerNotRunningError(container_id, container.status)

        network_settings = container.attrs.get("NetworkSettings") or {}
        address = network_settings.get("IPAddress")
        if not address:
            for network in (network_settings.get("Networks") or {}).values():
                if network and network.get("IPAddress"):
                    address = network["IPAddress"]
                    break
        if not address:
            raise ContainerIPAddressError(
                container_id, "container is not attached to a network"
            )
        return address

    # Image materialization

    async def commit(
        self, container_id: str, author: str, changes: Sequence[str], message: str
    ) -> str:
        """Commit a container to a new image."""
        container = await self._get_container(container_id)
        try:
            image = await self._run_sync(
                container.commit,
                author=author,
                changes=list(changes),
                comment=message,
            )
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to commit container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

        logger.info("Committed container %s to image %s", container_id, image.id)
        return image.id

    async def export(self, container_id: str, dst: BinaryIO) -> None:
        """Export the container filesystem into dst."""
        container = await self._get_container(container_id)
        try:
            chunks = await self._run_sync(
                container.export, chunk_size=settings.stream_chunk_size
            )
            await self._run_sync(write_chunks, chunks, dst)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to export container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e
        logger.debug("Exported container %s", container_id)

    async def _get_image(self, image_id: str) -> Any:
        client = await self._get_client()
        try:
            return await self._run_sync(client.images.get, image_id)
        except (PodmanError, requests.exceptions.RequestException) as e:
            raise self._translate(e, image_id, kind="image") from e

    async def save_image(self, image_id: str, dst: BinaryIO) -> None:
        """Save the image into dst."""
        image = await self._get_image(image_id)
        try:
            chunks = await self._run_sync(
                image.save, chunk_size=settings.stream_chunk_size
            )
            await self._run_sync(write_chunks, chunks, dst)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to save image %s: %s", image_id, e)
            raise self._translate(e, image_id, kind="image") from e
        logger.debug("Saved image %s", image_id)

    async def import_image(
        self, path: str, changes: Sequence[str], repo: str, platform: str
    ) -> str:
        """Import a tar archive as a new image tagged into repo."""
        client = await self._get_client()
        params: Dict[str, Any] = {}
        if repo:
            params["reference"] = repo
        if changes:
            params["changes"] = list(changes)
        if platform:
            # libpod's import endpoint takes no platform; the archive is imported as-is
            logger.warning(
                "Podman ignores platform %s when importing %s", platform, path
            )

        with open(path, "rb") as archive:
            try:
                response = await self._run_sync(
                    client.api.post,
                    "/images/import",
                    params=params,
                    data=archive,
                    headers={"Content-Type": "application/x-tar"},
                )
                response.raise_for_status()
            except (PodmanError, requests.exceptions.RequestException) as e:
                logger.error("Failed to import %s: %s", path, e)
                raise self._translate(e, repo or path, kind="image") from e

        image_id = response.json().get("Id")
        if not image_id:
            raise DriverError(f"Import of {path} did not report an image ID")
        logger.info("Imported %s as image %s", path, image_id)
        return image_id

    async def sha256(self, image_id: str) -> str:
        """Return the image's content ID."""
        image = await self._get_image(image_id)
        content_id = image.attrs.get("Id") or image.id
        if not content_id.startswith("sha256:"):
            content_id = f"sha256:{content_id}"
        return content_id

    async def digest(self, image_id: str) -> str:
        """Return the image's first repo digest, if any."""
        image = await self._get_image(image_id)
        digests = image.attrs.get("RepoDigests") or []
        return digests[0] if digests else ""

    async def delete_image(self, image_id: str) -> None:
        """Delete an image reference without forcing."""
        client = await self._get_client()
        try:
            await self._run_sync(client.images.remove, image_id, force=False)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to delete image %s: %s", image_id, e)
            raise self._translate(e, image_id, kind="image") from e
        logger.info("Deleted image %s", image_id)

    async def tag_image(self, image_id: str, repo: str, force: bool) -> None:
        """Tag an image, refusing to move an existing tag unless forced."""
        client = await self._get_client()
        image = await self._get_image(image_id)

        if not force:
            try:
                existing = await self._run_sync(client.images.get, repo)
            except (NotFound, ImageNotFound):
                existing = None
            except (PodmanError, requests.exceptions.RequestException) as e:
                raise self._translate(e, repo, kind="image") from e
            if existing is not None and existing.id != image.id:
                raise ImageConflictError(repo, f"already refers to {existing.id}")

        repository, tag = split_reference(repo)
        try:
            tagged = await self._run_sync(image.tag, repository, tag, force=force)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to tag image %s as %s: %s", image_id, repo, e)
            raise self._translate(e, repo, kind="image") from e
        # With force set podman-py reports a rejected tag as False
        if tagged is False:
            logger.error("Podman refused to tag image %s as %s", image_id, repo)
            raise DriverError(f"Podman refused to tag {image_id} as {repo}")
        logger.info("Tagged image %s as %s", image_id, repo)

    # Registry session and distribution

    async def login(self, repo: str, username: str, password: str) -> None:
        """Open the registry session after Podman accepts the credentials."""
        credentials = self.session.open(repo, username, password)
        try:
            await self._authenticate(credentials)
        except BaseException:
            # Covers rejection and a caller cancelling the login
            self.session.close(repo)
            raise
        logger.info("Logged in to %s as %s", credentials.registry, username)

    async def _authenticate(self, credentials: RegistryCredentials) -> None:
        client = await self._get_client()
        try:
            await self._run_sync(
                client.login,
                credentials.username,
                password=credentials.password,
                registry=credentials.registry,
            )
        except APIError as e:
            logger.error("Login to %s failed: %s", credentials.registry, e)
            raise RegistryAuthError(credentials.registry, str(e)) from e
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Login to %s failed: %s", credentials.registry, e)
            raise self._translate(e, credentials.registry) from e

    async def logout(self, repo: str) -> None:
        """Release the registry session."""
        self.session.close(repo)
        logger.info("Logged out from %s", registry_of(repo))

    def _translate_transfer(self, e: Exception, ref: str) -> DriverError:
        if any(marker in str(e).lower() for marker in _AUTH_MARKERS):
            return RegistryAuthError(registry_of(ref), str(e))
        return self._translate(e, ref, kind="image")

    async def pull(self, image: str, platform: str) -> None:
        """Pull an image."""
        credentials = self.session.credentials_for(image)
        client = await self._get_client()

        kwargs: Dict[str, Any] = {}
        if credentials:
            kwargs["auth_config"] = {
                "username": credentials.username,
                "password": credentials.password,
            }
        if platform:
            kwargs["platform"] = platform

        repository, tag = split_reference(image)
        try:
            await self._run_sync(client.images.pull, repository, tag, **kwargs)
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to pull %s: %s", image, e)
            raise self._translate_transfer(e, image) from e
        logger.info("Pulled %s", image)

    async def push(self, name: str, platform: str) -> None:
        """
        Push an image to its registry.

        Posts to the libpod push endpoint directly: podman-py's
        ``images.push`` replaces the service's progress stream with a
        summary of its own, which hides errors reported while pushing.
        """
        credentials = self.session.credentials_for(name)
        client = await self._get_client()

        headers: Dict[str, Any] = {}
        if credentials:
            headers["X-Registry-Auth"] = encode_auth_header(
                {"username": credentials.username, "password": credentials.password}
            )
        if platform:
            # Podman pushes the image stored under the tag as-is
            logger.debug("Pushing %s for platform %s", name, platform)

        try:
            response = await self._run_sync(
                client.api.post,
                f"/images/{urllib.parse.quote_plus(name)}/push",
                headers=headers,
            )
            response.raise_for_status()
        except (PodmanError, requests.exceptions.RequestException) as e:
            logger.error("Failed to push %s: %s", name, e)
            raise self._translate_transfer(e, name) from e

        for line in response.text.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            message = json.loads(line)
            if message.get("error"):
                logger.error("Failed to push %s: %s", name, message["error"])
                raise self._translate_transfer(DriverError(message["error"]), name)
        logger.info("Pushed %s", name)
