from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    # Container driver settings
    # Supported drivers:
    # - docker: Docker Engine API (via aiodocker)
    # - podman: Podman API (via podman-py)
    # - mock: In-memory driver for exercising pipelines without an engine
    container_driver: Literal["docker", "podman", "mock"] = Field(
        default="docker", description="Container runtime driver to use"
    )

    # Runtime endpoints
    docker_url: str | None = Field(
        default=None,
        description="Docker Engine URL (defaults to DOCKER_HOST or the local socket)",
    )
    podman_url: str | None = Field(
        default=None,
        description="Podman service URL (defaults to the rootless user socket)",
    )

    # Lifecycle settings
    stop_timeout: int = Field(
        default=10,
        ge=0,
        description="Seconds to wait for a graceful stop before the runtime kills",
    )
    min_runtime_version: str | None = Field(
        default=None,
        description="Minimum runtime version required by verify() (optional)",
    )

    # Image settings
    default_registry: str = Field(
        default="docker.io",
        description="Registry assumed for references without a registry host",
    )
    stream_chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        description="Chunk size in bytes when streaming export/save archives",
    )

    log_level: str = Field(default="INFO", description="Log level")

    class Config:
        env_prefix = "DRYDOCK_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
