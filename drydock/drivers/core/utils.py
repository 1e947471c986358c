"""
Shared utilities for container drivers.

This module provides common helper functions used across different
container runtime drivers (Docker, Podman, mock): image reference parsing,
runtime version parsing, and streaming archive data into a caller's writer.
"""

import re
import logging
from typing import BinaryIO, Dict, Iterable, Optional, Tuple

from packaging.version import InvalidVersion, Version

from drydock.config import settings
from drydock.drivers.core.errors import DriverError

logger = logging.getLogger(__name__)


def _is_registry_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def registry_of(reference: str) -> str:
    """
    Return the registry host an image reference resolves against.

    The first path component is a registry host only when it looks like one
    (contains a dot or a port, or is ``localhost``); otherwise the reference
    belongs to the default registry.

    Examples:
        >>> registry_of("nginx:1.25")
        'docker.io'
        >>> registry_of("myuser/app")
        'docker.io'
        >>> registry_of("registry.example.com/team/app:v1")
        'registry.example.com'
        >>> registry_of("localhost:5000/app")
        'localhost:5000'
    """
    first, sep, _ = reference.partition("/")
    if sep and _is_registry_host(first):
        return first
    return settings.default_registry


def split_reference(reference: str) -> Tuple[str, Optional[str]]:
    """
    Split an image reference into repository and tag.

    A colon only introduces a tag when it comes after the last slash, so
    registry ports are left alone. Digest references are returned unchanged
    with no tag.

    Examples:
        >>> split_reference("myrepo:1.0")
        ('myrepo', '1.0')
        >>> split_reference("localhost:5000/app")
        ('localhost:5000/app', None)
        >>> split_reference("app@sha256:abcd")
        ('app@sha256:abcd', None)
    """
    if "@" in reference:
        return reference, None
    repository, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, None
    return repository, tag


def qualify_reference(reference: str) -> str:
    """
    Prefix a reference with its registry host if it has none.

    Runtimes treat ``app`` and ``docker.io/app`` as the same local image,
    but credential headers are matched against the explicit host.
    """
    first, sep, _ = reference.partition("/")
    if sep and _is_registry_host(first):
        return reference
    return f"{settings.default_registry}/{reference}"


def parse_runtime_version(raw: str) -> Version:
    """
    Parse a version string reported by a container runtime.

    Runtimes decorate their versions with distribution suffixes
    (``20.10.21+dfsg1``, ``18.09.1-ce``, ``4.9.3-dev``); only the leading
    release segment takes part in comparisons.

    Raises:
        DriverError: If no release number can be found
    """
    match = re.match(r"\s*v?(\d+(?:\.\d+)*)", raw or "")
    if not match:
        raise DriverError(f"Unrecognized runtime version: {raw!r}")
    try:
        return Version(match.group(1))
    except InvalidVersion as e:
        raise DriverError(f"Unrecognized runtime version: {raw!r}") from e


def parse_device(device: str) -> Dict[str, str]:
    """
    Parse a ``host[:container[:permissions]]`` device mapping.

    Examples:
        >>> parse_device("/dev/fuse")
        {'PathOnHost': '/dev/fuse', 'PathInContainer': '/dev/fuse', 'CgroupPermissions': 'rwm'}
    """
    parts = device.split(":")
    if not parts[0] or len(parts) > 3:
        raise ValueError(f"Invalid device mapping: '{device}'")
    host = parts[0]
    container = parts[1] if len(parts) > 1 and parts[1] else host
    permissions = parts[2] if len(parts) > 2 and parts[2] else "rwm"
    return {
        "PathOnHost": host,
        "PathInContainer": container,
        "CgroupPermissions": permissions,
    }


def parse_tmpfs(entries: Iterable[str]) -> Dict[str, str]:
    """
    Turn ``path[:options]`` entries into a path -> options mapping.

    Examples:
        >>> parse_tmpfs(["/run", "/tmp:rw,size=64m"])
        {'/run': '', '/tmp': 'rw,size=64m'}
    """
    mounts: Dict[str, str] = {}
    for entry in entries:
        path, _, options = entry.partition(":")
        if not path:
            raise ValueError(f"Invalid tmpfs mount: '{entry}'")
        mounts[path] = options
    return mounts


def write_chunks(chunks: Iterable[bytes], dst: BinaryIO) -> int:
    """
    Write every chunk into ``dst`` and flush it.

    Exceptions raised by ``dst`` propagate unchanged, so a destination that
    fails or is closed mid-transfer is reported to the caller instead of
    being treated as a short but successful write.

    Returns:
        The number of bytes written
    """
    written = 0
    for chunk in chunks:
        if chunk:
            dst.write(chunk)
            written += len(chunk)
    dst.flush()
    return written
