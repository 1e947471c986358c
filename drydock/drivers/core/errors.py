"""
Error types raised by container drivers.

Every driver translates its runtime's native exceptions into this hierarchy
at the driver boundary, so callers can tell caller-correctable failures
(auth, conflict) apart from ones that usually abort a build (runtime
unavailable). Errors writing to or reading from archive streams are not
wrapped: they propagate exactly as the stream raised them.
"""

from typing import Optional


class DriverError(Exception):
    """Base class for all driver errors."""


class RuntimeUnavailableError(DriverError):
    """The backing container runtime is unreachable or unusable."""

    def __init__(self, runtime: str, details: str = ""):
        self.runtime = runtime
        self.details = details
        message = f"Container runtime {runtime} is not available"
        if details:
            message += f": {details}"
        super().__init__(message)


class NotFoundError(DriverError):
    """A referenced container, image or tag does not exist."""

    kind = "object"

    def __init__(self, ref: str, details: str = ""):
        self.ref = ref
        self.details = details
        message = f"No such {self.kind}: {ref}"
        if details:
            message += f" ({details})"
        super().__init__(message)


class ContainerNotFoundError(NotFoundError):
    kind = "container"


class ImageNotFoundError(NotFoundError):
    kind = "image"


class ContainerNotRunningError(DriverError):
    """The operation needs a running container."""

    def __init__(self, container_id: str, status: Optional[str] = None):
        self.container_id = container_id
        self.status = status
        message = f"Container {container_id} is not running"
        if status:
            message += f" (status: {status})"
        super().__init__(message)


class ContainerIPAddressError(DriverError):
    """
    Exception raised when a container's IP address cannot be determined.

    This typically occurs when:
    - The container has no network attachment (e.g. network mode "none")
    - Network configuration issues prevent IP assignment
    """

    def __init__(self, container_id: str, details: str = ""):
        self.container_id = container_id
        self.details = details
        message = f"Failed to obtain IP address for container {container_id}"
        if details:
            message += f": {details}"
        super().__init__(message)


class RegistryAuthError(DriverError):
    """Login was rejected, or a registry refused an unauthenticated request."""

    def __init__(self, registry: str, details: str = ""):
        self.registry = registry
        self.details = details
        message = f"Authentication with registry {registry} failed"
        if details:
            message += f": {details}"
        super().__init__(message)


class ConflictError(DriverError):
    """The request conflicts with existing state."""


class ImageConflictError(ConflictError):
    """A tag points elsewhere, or an image is still in use."""

    def __init__(self, ref: str, details: str = ""):
        self.ref = ref
        self.details = details
        message = f"Image conflict on {ref}"
        if details:
            message += f": {details}"
        super().__init__(message)


class SessionConflictError(ConflictError):
    """Invalid registry session transition (double login, stray logout, ...)."""


class InvalidContainerConfigError(DriverError, ValueError):
    """The container configuration cannot be used to start a container."""
