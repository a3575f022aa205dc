"""
Application configuration
"""
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    API_TITLE: str = "node_image API"
    API_VERSION: str = "0.1.0"

    # Redis
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Pipeline. The worker reads the same NODE_IMAGE_* variables, so the API
    # looks for receipts where the worker writes them.
    ARTIFACTS_PATH: Path = Field(
        Path("/files/artifacts/node_image"),
        validation_alias=AliasChoices("NODE_IMAGE_ARTIFACTS_PATH", "ARTIFACTS_PATH"),
    )
    TOOLCHAIN_DIST_URL: str = Field(
        "https://static.rust-lang.org/rustup/dist",
        validation_alias=AliasChoices("NODE_IMAGE_DIST_BASE_URL", "TOOLCHAIN_DIST_URL"),
    )

    @property
    def redis_url(self) -> str:
        """Redis connection string"""
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
