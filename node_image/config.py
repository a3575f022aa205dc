"""
Pipeline configuration sourced from the environment.
"""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from node_image.policy.profile import DEFAULT_BUILD_PACKAGES, DEFAULT_RUNTIME_PACKAGES


class PipelineSettings(BaseSettings):
    """Pipeline settings (``NODE_IMAGE_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="NODE_IMAGE_",
        env_file=".env",
        extra="ignore",
    )

    profile_id: str = "ubuntu-24.04-rust-stable-snarkos"
    base_image: str = "ubuntu:24.04"
    build_packages: List[str] = list(DEFAULT_BUILD_PACKAGES)
    runtime_packages: List[str] = list(DEFAULT_RUNTIME_PACKAGES)

    toolchain_channel: str = "stable"
    dist_base_url: str = "https://static.rust-lang.org/rustup/dist"

    # Installer download policy
    fetch_timeout: float = 300.0   # seconds
    fetch_retries: int = 0
    fetch_backoff: float = 2.0     # seconds, doubled per retry

    binary_name: str = "snarkos"
    build_timeout: int = 3600      # seconds

    image_repository: str = "snarkos"
    image_tag: str = "latest"

    # Explicit target; detected from the Docker daemon when unset
    machine_id: Optional[str] = None

    artifacts_path: Path = Path("/files/artifacts/node_image")


def get_settings() -> PipelineSettings:
    return PipelineSettings()
