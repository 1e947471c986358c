"""Docker driver implementation."""

from drydock.drivers.docker.driver import DockerDriver

__all__ = ["DockerDriver"]
