"""
Container Driver abstraction layer for drydock.

This module provides a pluggable driver architecture for container runtimes,
allowing an image build pipeline to work with Docker, Podman, or an
in-memory driver in tests.
"""

from drydock.drivers.core import (
    ContainerConfig,
    ContainerDriver,
    get_driver,
    set_driver,
    create_driver,
    initialize_driver,
    close_driver,
    registry_session,
)

__all__ = [
    "ContainerConfig",
    "ContainerDriver",
    "get_driver",
    "set_driver",
    "create_driver",
    "initialize_driver",
    "close_driver",
    "registry_session",
]
