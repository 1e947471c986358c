"""
In-memory container driver.

MockDriver implements the ContainerDriver interface without a container
engine so a build pipeline can be exercised in tests. It keeps containers,
images, tags and a fake remote registry in dictionaries, records every call
in ``calls``, and fails any operation on demand via ``fail_on()``.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Set, Tuple

from packaging.version import Version

from drydock.config import settings
from drydock.drivers.core.base import ContainerConfig, ContainerDriver
from drydock.drivers.core.errors import (
    ContainerIPAddressError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    ImageConflictError,
    ImageNotFoundError,
    InvalidContainerConfigError,
    RegistryAuthError,
    RuntimeUnavailableError,
)
from drydock.drivers.core.session import RegistrySession
from drydock.drivers.core.utils import (
    parse_runtime_version,
    qualify_reference,
    registry_of,
    split_reference,
    write_chunks,
)

logger = logging.getLogger(__name__)


@dataclass
class MockContainer:
    """A container known to the mock runtime."""

    container_id: str
    config: ContainerConfig
    image_id: str
    ip_address: Optional[str] = "172.17.0.2"
    running: bool = True
    files: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class MockImage:
    """An image known to the mock runtime."""

    image_id: str
    content: bytes
    author: str = ""
    message: str = ""
    changes: Tuple[str, ...] = ()
    platform: str = ""
    repo_digests: List[str] = field(default_factory=list)


def _content_id(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()


class MockDriver(ContainerDriver):
    """
    In-memory implementation of the ContainerDriver interface.

    Use this driver when:
        - Testing pipelines without a container engine
        - Set DRYDOCK_CONTAINER_DRIVER=mock

    Registries listed in ``private_registries`` refuse push/pull without a
    matching session. ``credentials`` maps a registry to the only
    (username, password) pair its login accepts; registries without an
    entry accept any credentials.
    """

    runtime_name = "mock"

    def __init__(self, version: str = "24.0.7") -> None:
        self.session = RegistrySession()
        self.available = True
        self.runtime_version = version
        self.containers: Dict[str, MockContainer] = {}
        self.images: Dict[str, MockImage] = {}
        self.tags: Dict[str, str] = {}
        # Remote registry contents: qualified reference -> image content
        self.remote: Dict[str, bytes] = {}
        self.private_registries: Set[str] = set()
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._failures: Dict[str, Exception] = {}
        self.initialized = False

    def fail_on(self, operation: str, error: Exception) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures[operation] = error

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        error = self._failures.pop(operation, None)
        if error is not None:
            logger.debug("Injected failure for %s: %s", operation, error)
            raise error

    def called(self, operation: str) -> bool:
        return any(name == operation for name, _ in self.calls)

    def add_image(self, reference: str, content: Optional[bytes] = None) -> str:
        """Seed a local image under ``reference`` and return its ID."""
        data = content if content is not None else reference.encode()
        image_id = _content_id(data)
        self.images.setdefault(image_id, MockImage(image_id=image_id, content=data))
        self.tags[reference] = image_id
        return image_id

    def _resolve_image(self, ref: str) -> MockImage:
        image_id = self.tags.get(ref, ref)
        image = self.images.get(image_id)
        if image is None:
            raise ImageNotFoundError(ref)
        return image

    def _get_container(self, container_id: str) -> MockContainer:
        container = self.containers.get(container_id)
        if container is None:
            raise ContainerNotFoundError(container_id)
        return container

    def _require_access(self, reference: str) -> None:
        credentials = self.session.credentials_for(reference)
        registry = registry_of(reference)
        if registry in self.private_registries and credentials is None:
            raise RegistryAuthError(registry, "authentication required")

    async def initialize(self) -> None:
        if not self.available:
            raise RuntimeUnavailableError(self.runtime_name, "runtime is not reachable")
        self.initialized = True

    async def close(self) -> None:
        self.initialized = False

    # Readiness

    async def verify(self) -> None:
        self._record("verify")
        current = await self.version()
        if settings.min_runtime_version:
            required = parse_runtime_version(settings.min_runtime_version)
            if current < required:
                raise RuntimeUnavailableError(
                    self.runtime_name,
                    f"version {current} is older than required {required}",
                )

    async def version(self) -> Version:
        self._record("version")
        if not self.available:
            raise RuntimeUnavailableError(self.runtime_name, "runtime is not reachable")
        return parse_runtime_version(self.runtime_version)

    # Container lifecycle

    async def start_container(self, config: ContainerConfig) -> str:
        self._record("start_container", config)
        if not config.image:
            raise InvalidContainerConfigError("ContainerConfig.image must not be empty")
        if not self.available:
            raise RuntimeUnavailableError(self.runtime_name, "runtime is not reachable")
        image = self._resolve_image(config.image)

        container_id = uuid.uuid4().hex
        self.containers[container_id] = MockContainer(
            container_id=container_id, config=config, image_id=image.image_id
        )
        logger.debug("Started mock container %s from %s", container_id, config.image)
        return container_id

    async def kill_container(self, container_id: str) -> None:
        self._record("kill_container", container_id)
        container = self._get_container(container_id)
        if not container.running:
            raise ContainerNotRunningError(container_id, "exited")
        del self.containers[container_id]

    async def stop_container(self, container_id: str) -> None:
        self._record("stop_container", container_id)
        self._get_container(container_id)
        del self.containers[container_id]

    async def ip_address(self, container_id: str) -> str:
        self._record("ip_address", container_id)
        container = self._get_container(container_id)
        if not container.running:
            raise ContainerNotRunningError(container_id, "exited")
        if not container.ip_address:
            raise ContainerIPAddressError(
                container_id, "container is not attached to a network"
            )
        return container.ip_address

    # Image materialization

    def _snapshot(self, container: MockContainer) -> bytes:
        base = self.images[container.image_id].content
        layer = b"".join(
            name.encode() + b"\0" + data for name, data in sorted(container.files.items())
        )
        return base + b"\n" + layer

    async def commit(
        self, container_id: str, author: str, changes: Sequence[str], message: str
    ) -> str:
        self._record("commit", container_id, author, tuple(changes), message)
        container = self._get_container(container_id)
        content = self._snapshot(container) + "\n".join(changes).encode()
        image_id = _content_id(content)
        self.images[image_id] = MockImage(
            image_id=image_id,
            content=content,
            author=author,
            message=message,
            changes=tuple(changes),
        )
        return image_id

    async def export(self, container_id: str, dst: BinaryIO) -> None:
        self._record("export", container_id)
        container = self._get_container(container_id)
        data = self._snapshot(container)
        size = settings.stream_chunk_size
        write_chunks((data[i:i + size] for i in range(0, len(data), size)), dst)

    async def import_image(
        self, path: str, changes: Sequence[str], repo: str, platform: str
    ) -> str:
        self._record("import_image", path, tuple(changes), repo, platform)
        with open(path, "rb") as archive:
            content = archive.read()
        content += "\n".join(changes).encode()
        image_id = _content_id(content)
        self.images[image_id] = MockImage(
            image_id=image_id, content=content, changes=tuple(changes), platform=platform
        )
        if repo:
            self.tags[repo] = image_id
        return image_id

    async def save_image(self, image_id: str, dst: BinaryIO) -> None:
        self._record("save_image", image_id)
        image = self._resolve_image(image_id)
        size = settings.stream_chunk_size
        data = image.content
        write_chunks((data[i:i + size] for i in range(0, len(data), size)), dst)

    async def sha256(self, image_id: str) -> str:
        self._record("sha256", image_id)
        return self._resolve_image(image_id).image_id

    async def digest(self, image_id: str) -> str:
        self._record("digest", image_id)
        image = self._resolve_image(image_id)
        return image.repo_digests[0] if image.repo_digests else ""

    async def delete_image(self, image_id: str) -> None:
        self._record("delete_image", image_id)
        image = self._resolve_image(image_id)
        in_use = [
            c.container_id for c in self.containers.values() if c.image_id == image.image_id
        ]
        if in_use:
            raise ImageConflictError(image_id, f"image is used by container {in_use[0]}")

        if image_id in self.tags:
            del self.tags[image_id]
            if image.image_id in self.tags.values():
                # Other references keep the image alive
                return
        else:
            refs = [ref for ref, target in self.tags.items() if target == image.image_id]
            if len(refs) > 1:
                raise ImageConflictError(
                    image_id, "image is referenced in multiple repositories"
                )
            for ref in refs:
                del self.tags[ref]
        del self.images[image.image_id]

    async def tag_image(self, image_id: str, repo: str, force: bool) -> None:
        self._record("tag_image", image_id, repo, force)
        image = self._resolve_image(image_id)
        existing = self.tags.get(repo)
        if existing is not None and existing != image.image_id and not force:
            raise ImageConflictError(repo, f"already refers to {existing}")
        self.tags[repo] = image.image_id

    # Registry session and distribution

    async def login(self, repo: str, username: str, password: str) -> None:
        self._record("login", repo, username)
        credentials = self.session.open(repo, username, password)
        expected = self.credentials.get(credentials.registry)
        if expected is not None and expected != (username, password):
            self.session.close(repo)
            raise RegistryAuthError(credentials.registry, "invalid username/password")

    async def logout(self, repo: str) -> None:
        self._record("logout", repo)
        self.session.close(repo)

    async def pull(self, image: str, platform: str) -> None:
        self._record("pull", image, platform)
        self._require_access(image)
        content = self.remote.get(qualify_reference(image))
        if content is None:
            raise ImageNotFoundError(image, "manifest unknown")
        image_id = _content_id(content)
        pulled = self.images.setdefault(
            image_id, MockImage(image_id=image_id, content=content, platform=platform)
        )
        repo_digest = f"{split_reference(image)[0]}@{image_id}"
        if repo_digest not in pulled.repo_digests:
            pulled.repo_digests.append(repo_digest)
        self.tags[image] = image_id

    async def push(self, name: str, platform: str) -> None:
        self._record("push", name, platform)
        image = self._resolve_image(name)
        self._require_access(name)
        # Pushing identical content again is a no-op
        self.remote[qualify_reference(name)] = image.content
        repo_digest = f"{split_reference(name)[0]}@{image.image_id}"
        if repo_digest not in image.repo_digests:
            image.repo_digests.append(repo_digest)
