from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_LABELS = ["algal-leaf", "brown-blight", "grey-blight"]


class Settings(BaseSettings):
    """Deployment settings, read from DISEASE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DISEASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        protected_namespaces=(),
    )

    model_path: str = "models/model.onnx"
    labels: List[str] = Field(default_factory=lambda: list(DEFAULT_LABELS))
    input_size: int = 640
    block_size: int = 85
    fetch_timeout: float = 10.0
    restore_bbox_coordinates: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080


@lru_cache()
def get_settings() -> Settings:
    return Settings()
