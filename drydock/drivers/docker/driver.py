"""
Docker container driver implementation.

This module implements the ContainerDriver interface using the Docker Engine
API (via aiodocker). Operations aiodocker has no helper for (container
export, image import, registry auth check) are sent as raw Engine API
requests through the same client session.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, BinaryIO

import aiohttp
import aiodocker
from aiodocker.exceptions import DockerError
from packaging.version import Version

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
    parse_device,
    parse_runtime_version,
    parse_tmpfs,
    qualify_reference,
    registry_of,
    split_reference,
)

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "401")
_NOT_FOUND_MARKERS = ("not found", "manifest unknown", "no such", "does not exist")

# Status aiodocker reports when it cannot connect to the engine
_UNREACHABLE_STATUS = 900


def _stream_error(messages: List[Dict[str, Any]]) -> Optional[str]:
    """Return the first error reported in a JSON progress stream."""
    for message in messages:
        if message.get("error"):
            return str(message["error"])
        detail = message.get("errorDetail")
        if detail:
            return str(detail.get("message", detail))
    return None


class DockerDriver(ContainerDriver):
    """
    Docker implementation of the ContainerDriver interface.

    Uses aiodocker for async Docker operations. Requires access to the
    Docker socket (typically /var/run/docker.sock) or DOCKER_HOST.

    Configuration:
        - Set DRYDOCK_CONTAINER_DRIVER=docker
        - Optionally DRYDOCK_DOCKER_URL to point at a remote engine
    """

    runtime_name = "docker"

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url if url is not None else settings.docker_url
        self.client: Optional[aiodocker.Docker] = None
        self.session = RegistrySession()

    async def initialize(self) -> None:
        """Initialize Docker client."""
        if self.client:
            return

        try:
            self.client = aiodocker.Docker(url=self.url)
            # Test connection
            await self.client.version()
            logger.info("%s initialized successfully", self.__class__.__name__)
        except (DockerError, aiohttp.ClientError, OSError, ValueError) as e:
            logger.error("Failed to initialize %s: %s", self.__class__.__name__, e)
            if self.client:
                await self.client.close()
                self.client = None
            raise RuntimeUnavailableError(self.runtime_name, str(e)) from e

    async def close(self) -> None:
        """Close Docker client."""
        if self.client:
            await self.client.close()
            self.client = None

    async def _get_client(self) -> aiodocker.Docker:
        if not self.client:
            await self.initialize()

        assert self.client is not None  # For type checker
        return self.client

    def _translate(self, e: Exception, ref: str, kind: str = "container") -> DriverError:
        """Map an aiodocker/aiohttp exception onto the driver error hierarchy."""
        if isinstance(e, aiohttp.ClientError):
            return RuntimeUnavailableError(self.runtime_name, str(e))
        if isinstance(e, DockerError):
            if e.status == _UNREACHABLE_STATUS:
                return RuntimeUnavailableError(self.runtime_name, e.message)
            if e.status == 404:
                if kind == "image":
                    return ImageNotFoundError(ref, e.message)
                return ContainerNotFoundError(ref, e.message)
            if e.status == 409 and kind == "image":
                return ImageConflictError(ref, e.message)
            if e.status in (401, 403):
                return RegistryAuthError(registry_of(ref), e.message)
            return DriverError(f"Docker error on {ref}: {e.message}")
        return DriverError(str(e))

    # Readiness

    async def verify(self) -> None:
        """Verify the engine answers and satisfies the minimum version."""
        current = await self.version()
        if settings.min_runtime_version:
            required = parse_runtime_version(settings.min_runtime_version)
            if current < required:
                raise RuntimeUnavailableError(
                    self.runtime_name,
                    f"version {current} is older than required {required}",
                )
        logger.info("Docker engine %s verified", current)

    async def version(self) -> Version:
        """Read the Docker engine version."""
        client = await self._get_client()
        try:
            info = await client.version()
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to read Docker version: %s", e)
            raise RuntimeUnavailableError(self.runtime_name, str(e)) from e
        return parse_runtime_version(info.get("Version", ""))

    # Container lifecycle

    def _build_container_config(self, config: ContainerConfig) -> Dict[str, Any]:
        """Build the Engine API create body from a ContainerConfig."""
        host_config: Dict[str, Any] = {
            "Privileged": config.privileged,
            "Binds": [f"{host}:{target}" for host, target in config.volumes.items()],
            "Devices": [parse_device(device) for device in config.device],
            "CapAdd": list(config.cap_add),
            "CapDrop": list(config.cap_drop),
        }
        if config.tmpfs:
            host_config["Tmpfs"] = parse_tmpfs(config.tmpfs)
        if config.runtime:
            host_config["Runtime"] = config.runtime

        body: Dict[str, Any] = {
            "Image": config.image,
            "Tty": True,
            "OpenStdin": True,
            "Labels": {"created_by": "drydock"},
            "HostConfig": host_config,
        }
        command = config.rendered_command()
        if command:
            body["Cmd"] = list(command)
        return body

    async def start_container(self, config: ContainerConfig) -> str:
        """Create and start a build container using Docker."""
        if not config.image:
            raise InvalidContainerConfigError("ContainerConfig.image must not be empty")

        client = await self._get_client()
        body = self._build_container_config(config)
        params = {"platform": config.platform} if config.platform else None

        try:
            created = await client._query_json(
                "containers/create",
                method="POST",
                params=params,
                data=json.dumps(body),
                headers={"Content-Type": "application/json"},
            )
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to create container from %s: %s", config.image, e)
            raise self._translate(e, config.image, kind="image") from e

        container_id = created["Id"]
        container = client.containers.container(container_id)
        try:
            await container.start()
        except BaseException as e:
            logger.error("Failed to start container %s: %r", container_id, e)
            # Nothing references the created container, also when the caller
            # cancelled the start
            await asyncio.shield(self._remove_created(container))
            if isinstance(e, (DockerError, aiohttp.ClientError)):
                raise self._translate(e, container_id) from e
            raise

        logger.info("Started container %s from %s", container_id, config.image)
        return container_id

    async def _remove_created(self, container: Any) -> None:
        try:
            await container.delete(force=True)
        except (DockerError, aiohttp.ClientError) as cleanup_error:
            logger.warning(
                "Failed to cleanup container %s after start error: %s",
                container.id,
                cleanup_error,
            )

    async def kill_container(self, container_id: str) -> None:
        """Kill and remove a container."""
        client = await self._get_client()
        try:
            container = await client.containers.get(container_id)
            await container.kill()
            await container.delete(force=True)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to kill container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

    async def stop_container(self, container_id: str) -> None:
        """Stop and remove a container, allowing settings.stop_timeout seconds to exit."""
        client = await self._get_client()
        try:
            container = await client.containers.get(container_id)
            await container.stop(t=settings.stop_timeout)
            await container.delete()
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to stop container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

    async def ip_address(self, container_id: str) -> str:
        """Return the container's address on its Docker network."""
        client = await self._get_client()
        try:
            container = await client.containers.get(container_id)
            container_info = await container.show()
        except (DockerError, aiohttp.ClientError) as e:
            raise self._translate(e, container_id) from e

        state = container_info.get("State", {})
        if not state.get("Running"):
            raise ContainerNotRunningError(container_id, state.get("Status"))

        network_settings = container_info.get("NetworkSettings") or {}
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
        client = await self._get_client()
        try:
            container = await client.containers.get(container_id)
            result = await container.commit(
                author=author or None,
                message=message or None,
                changes="\n".join(changes) if changes else None,
            )
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to commit container %s: %s", container_id, e)
            raise self._translate(e, container_id) from e

        image_id = result["Id"]
        logger.info("Committed container %s to image %s", container_id, image_id)
        return image_id

    async def _stream_into(self, path: str, ref: str, kind: str, dst: BinaryIO) -> None:
        client = await self._get_client()
        try:
            async with client._query(path, method="GET") as response:
                async for chunk in response.content.iter_chunked(
                    settings.stream_chunk_size
                ):
                    dst.write(chunk)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to stream %s %s: %s", kind, ref, e)
            raise self._translate(e, ref, kind=kind) from e
        dst.flush()

    async def export(self, container_id: str, dst: BinaryIO) -> None:
        """Export the container filesystem into dst."""
        await self._stream_into(
            f"containers/{container_id}/export", container_id, "container", dst
        )
        logger.debug("Exported container %s", container_id)

    async def save_image(self, image_id: str, dst: BinaryIO) -> None:
        """Save the image into dst."""
        await self._stream_into(f"images/{image_id}/get", image_id, "image", dst)
        logger.debug("Saved image %s", image_id)

    async def import_image(
        self, path: str, changes: Sequence[str], repo: str, platform: str
    ) -> str:
        """Import a tar archive as a new image tagged into repo."""
        client = await self._get_client()
        params: Dict[str, str] = {"fromSrc": "-"}
        if repo:
            repository, tag = split_reference(repo)
            params["repo"] = repository
            if tag:
                params["tag"] = tag
        if changes:
            params["changes"] = "\n".join(changes)
        if platform:
            params["platform"] = platform

        with open(path, "rb") as archive:
            try:
                async with client._query(
                    "images/create",
                    method="POST",
                    params=params,
                    data=archive,
                    headers={"Content-Type": "application/x-tar"},
                ) as response:
                    body = await response.text()
            except (DockerError, aiohttp.ClientError) as e:
                logger.error("Failed to import %s: %s", path, e)
                raise self._translate(e, repo or path, kind="image") from e

        messages = [json.loads(line) for line in body.splitlines() if line.strip()]
        error = _stream_error(messages)
        if error:
            raise DriverError(f"Failed to import {path}: {error}")
        image_id = next(
            (
                str(m["status"])
                for m in reversed(messages)
                if str(m.get("status", "")).startswith("sha256:")
            ),
            None,
        )
        if not image_id:
            raise DriverError(f"Import of {path} did not report an image ID")

        logger.info("Imported %s as image %s", path, image_id)
        return image_id

    async def _inspect_image(self, image_id: str) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            return await client.images.inspect(image_id)
        except (DockerError, aiohttp.ClientError) as e:
            raise self._translate(e, image_id, kind="image") from e

    async def sha256(self, image_id: str) -> str:
        """Return the image's content ID."""
        info = await self._inspect_image(image_id)
        return info["Id"]

    async def digest(self, image_id: str) -> str:
        """Return the image's first repo digest, if any."""
        info = await self._inspect_image(image_id)
        digests = info.get("RepoDigests") or []
        return digests[0] if digests else ""

    async def delete_image(self, image_id: str) -> None:
        """Delete an image reference without forcing."""
        client = await self._get_client()
        try:
            await client.images.delete(image_id, force=False)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to delete image %s: %s", image_id, e)
            raise self._translate(e, image_id, kind="image") from e
        logger.info("Deleted image %s", image_id)

    async def tag_image(self, image_id: str, repo: str, force: bool) -> None:
        """Tag an image, refusing to move an existing tag unless forced."""
        client = await self._get_client()
        source = await self._inspect_image(image_id)

        if not force:
            try:
                existing = await client.images.inspect(repo)
            except (DockerError, aiohttp.ClientError) as e:
                if not isinstance(e, DockerError) or e.status != 404:
                    raise self._translate(e, repo, kind="image") from e
                existing = None
            if existing and existing.get("Id") != source["Id"]:
                raise ImageConflictError(
                    repo, f"already refers to {existing.get('Id')}"
                )

        repository, tag = split_reference(repo)
        try:
            await client.images.tag(image_id, repository, tag=tag)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to tag image %s as %s: %s", image_id, repo, e)
            raise self._translate(e, repo, kind="image") from e
        logger.info("Tagged image %s as %s", image_id, repo)

    # Registry session and distribution

    async def login(self, repo: str, username: str, password: str) -> None:
        """Open the registry session after the engine accepts the credentials."""
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
            await client._query_json(
                "auth",
                method="POST",
                data=json.dumps(credentials.auth_config()),
                headers={"Content-Type": "application/json"},
            )
        except DockerError as e:
            logger.error("Login to %s failed: %s", credentials.registry, e)
            # Older engines answer rejected credentials with a 500
            if e.status in (401, 403, 500):
                raise RegistryAuthError(credentials.registry, e.message) from e
            raise self._translate(e, credentials.registry) from e
        except aiohttp.ClientError as e:
            logger.error("Login to %s failed: %s", credentials.registry, e)
            raise RuntimeUnavailableError(self.runtime_name, str(e)) from e

    async def logout(self, repo: str) -> None:
        """Release the registry session."""
        self.session.close(repo)
        logger.info("Logged out from %s", registry_of(repo))

    def _transfer_error(self, ref: str, error: str) -> DriverError:
        lowered = error.lower()
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return RegistryAuthError(registry_of(ref), error)
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            return ImageNotFoundError(ref, error)
        return DriverError(f"Transfer of {ref} failed: {error}")

    def _translate_transfer(self, e: Exception, ref: str) -> DriverError:
        if isinstance(e, DockerError) and e.status not in (404, _UNREACHABLE_STATUS):
            return self._transfer_error(ref, e.message)
        return self._translate(e, ref, kind="image")

    async def pull(self, image: str, platform: str) -> None:
        """Pull an image."""
        credentials = self.session.credentials_for(image)
        client = await self._get_client()

        kwargs: Dict[str, Any] = {}
        from_image = image
        if credentials:
            kwargs["auth"] = credentials.auth_config()
            from_image = qualify_reference(image)
        if platform:
            kwargs["platform"] = platform

        try:
            messages = await client.images.pull(from_image, **kwargs)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to pull %s: %s", image, e)
            raise self._translate_transfer(e, image) from e

        error = _stream_error(messages or [])
        if error:
            logger.error("Failed to pull %s: %s", image, error)
            raise self._transfer_error(image, error)
        logger.info("Pulled %s", image)

    async def push(self, name: str, platform: str) -> None:
        """Push an image to its registry."""
        credentials = self.session.credentials_for(name)
        client = await self._get_client()

        kwargs: Dict[str, Any] = {}
        target = name
        if credentials:
            kwargs["auth"] = credentials.auth_config()
            target = qualify_reference(name)
        repository, tag = split_reference(target)
        if tag:
            kwargs["tag"] = tag
        if platform:
            # The Engine pushes every platform variant stored under the tag
            logger.debug("Pushing %s for platform %s", name, platform)

        try:
            messages = await client.images.push(repository, **kwargs)
        except (DockerError, aiohttp.ClientError) as e:
            logger.error("Failed to push %s: %s", name, e)
            raise self._translate_transfer(e, name) from e

        error = _stream_error(messages or [])
        if error:
            logger.error("Failed to push %s: %s", name, error)
            raise self._transfer_error(name, error)
        logger.info("Pushed %s", name)
