"""Server configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """memquery-server configuration. All values from env vars or .env file."""

    # Server
    host: str = "127.0.0.1"
    port: int = 18791
    log_level: str = "info"

    # Auth
    api_key: str = ""  # empty = no auth; comma-separated keys for rotation

    # memquery database
    db_path: str = "memquery.db"
    embed_dims: int = 1024

    # Embedding provider: "voyage", "openai", or "ollama"
    embed_provider: str = "voyage"
    embed_api_key: str = ""
    embed_model: str = "voyage-3-lite"
    embed_base_url: str = ""

    # Search tuning
    default_search_limit: int = 10
    max_search_limit: int = 200
    mmr_lambda: float = 0.5
    mmr_pool_multiplier: int = 2

    model_config = {"env_prefix": "MEMQUERY_", "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def db_path_resolved(self) -> Path:
        return Path(self.db_path).resolve()


# Singleton: import this everywhere instead of creating new Settings()
settings = Settings()
