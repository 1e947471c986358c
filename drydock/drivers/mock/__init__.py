"""In-memory driver for tests."""

from drydock.drivers.mock.driver import MockContainer, MockDriver, MockImage

__all__ = ["MockContainer", "MockDriver", "MockImage"]
