"""drydock: container runtime drivers for image build pipelines."""

import logging

from drydock.config import settings

__version__ = "0.1.0"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging the way drydock's tools expect."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
