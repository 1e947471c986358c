"""
Driver factory for creating container runtime drivers.

This module provides factory functions to instantiate the appropriate
container driver based on configuration.
"""

from typing import Callable, Dict, Optional
import logging

from drydock.config import settings
from drydock.drivers.core.base import ContainerDriver

logger = logging.getLogger(__name__)

# Driver registry mapping driver type to driver class factory
_DRIVER_REGISTRY: Dict[str, Callable[[], ContainerDriver]] = {}


def _get_driver_registry() -> Dict[str, Callable[[], ContainerDriver]]:
    """
    Lazily populate and return the driver registry.

    Uses lazy imports so runtime client libraries load only when needed.
    """
    if not _DRIVER_REGISTRY:
        from drydock.drivers.docker.driver import DockerDriver
        from drydock.drivers.podman.driver import PodmanDriver
        from drydock.drivers.mock.driver import MockDriver

        _DRIVER_REGISTRY.update(
            {
                "docker": DockerDriver,
                "podman": PodmanDriver,
                "mock": MockDriver,
            }
        )
    return _DRIVER_REGISTRY


# Global driver instance
_driver: Optional[ContainerDriver] = None


def create_driver(driver_type: str) -> ContainerDriver:
    """
    Create a container driver instance based on the specified type.

    Args:
        driver_type: One of:
            - "docker": Docker Engine API via aiodocker
            - "podman": Podman API via podman-py
            - "mock": In-memory driver for tests

    Returns:
        A ContainerDriver instance

    Raises:
        ValueError: If the driver type is not supported.
    """
    registry = _get_driver_registry()

    if driver_type in registry:
        return registry[driver_type]()

    raise ValueError(
        f"Unknown driver type: {driver_type}. "
        "Supported types: " + ", ".join(sorted(registry))
    )


def set_driver(driver: Optional[ContainerDriver]) -> None:
    """
    Explicitly set the global container driver instance.

    Args:
        driver: The ContainerDriver instance to set as the global driver,
            or None to clear it
    """
    global _driver
    _driver = driver


def get_driver() -> ContainerDriver:
    """
    Get the global container driver instance.

    Returns:
        The global ContainerDriver instance

    Raises:
        RuntimeError: If the driver has not been initialized
    """
    global _driver
    if _driver is None:
        raise RuntimeError(
            "Container driver not initialized. Call initialize_driver() first."
        )
    return _driver


async def initialize_driver(driver_type: Optional[str] = None) -> ContainerDriver:
    """
    Initialize, verify and set the global container driver.

    Verification runs before the driver is published, so a build fails
    here instead of on its first lifecycle operation.

    Args:
        driver_type: The type of driver to create. Defaults to
            settings.container_driver

    Returns:
        The initialized ContainerDriver instance

    Raises:
        RuntimeUnavailableError: If the runtime is unreachable or too old
    """
    driver_type = driver_type or settings.container_driver
    driver = create_driver(driver_type)
    await driver.initialize()
    try:
        await driver.verify()
    except Exception:
        await driver.close()
        raise
    set_driver(driver)
    logger.info("Container driver initialized: %s", driver_type)
    return driver


async def close_driver() -> None:
    """Close the global container driver."""
    global _driver
    if _driver is not None:
        await _driver.close()
        _driver = None
        logger.info("Container driver closed")
