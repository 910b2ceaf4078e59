"""Configuration management."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Embedding space
    embedding_dim: int = Field(default=512, gt=0, description="Length of every stored vector")
    neighbors_k: int = Field(default=5, ge=1, description="Default neighbor count per request")
    semantic_search_limit: int = Field(default=203, ge=1, description="Maximum semantic search matches per reply")
    semantic_search_threshold: float = Field(default=0.3, description="Minimum score when a search request sets none")

    # Model backend
    embedding_backend: Literal["local", "voyage"] = "local"
    embedding_model_name: str = "sentence-transformers/distiluse-base-multilingual-cased-v2"
    prefer_accelerator: bool = Field(default=True, description="Try CUDA/MPS before falling back to CPU")
    voyage_api_key: str = ""
    voyage_model: str = "voyage-3-lite"

    # Durable cache
    storage_namespace: str = "marginalia:embeddings"

    # Demo corpus
    demo_embeddings_path: Path = Path("assets/demo/embs")

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    logfire_token: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="MARGINALIA_",
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
