"""Podman driver implementation."""

from drydock.drivers.podman.driver import PodmanDriver

__all__ = ["PodmanDriver"]
