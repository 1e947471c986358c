"""Core driver abstractions and factory utilities."""

from drydock.drivers.core.base import ContainerConfig, ContainerDriver
from drydock.drivers.core.errors import (
    ConflictError,
    ContainerIPAddressError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    DriverError,
    ImageConflictError,
    ImageNotFoundError,
    InvalidContainerConfigError,
    NotFoundError,
    RegistryAuthError,
    RuntimeUnavailableError,
    SessionConflictError,
)
from drydock.drivers.core.factory import (
    get_driver,
    set_driver,
    create_driver,
    initialize_driver,
    close_driver,
)
from drydock.drivers.core.session import (
    RegistryCredentials,
    RegistrySession,
    SessionState,
    registry_session,
)
from drydock.drivers.core.utils import (
    parse_runtime_version,
    qualify_reference,
    registry_of,
    split_reference,
)

__all__ = [
    "ContainerConfig",
    "ContainerDriver",
    "ConflictError",
    "ContainerIPAddressError",
    "ContainerNotFoundError",
    "ContainerNotRunningError",
    "DriverError",
    "ImageConflictError",
    "ImageNotFoundError",
    "InvalidContainerConfigError",
    "NotFoundError",
    "RegistryAuthError",
    "RuntimeUnavailableError",
    "SessionConflictError",
    "get_driver",
    "set_driver",
    "create_driver",
    "initialize_driver",
    "close_driver",
    "RegistryCredentials",
    "RegistrySession",
    "SessionState",
    "registry_session",
    "parse_runtime_version",
    "qualify_reference",
    "registry_of",
    "split_reference",
]
