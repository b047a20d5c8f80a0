"""Application settings loaded from environment variables via pydantic-settings.

Settings hold secrets, connection strings and deployment choices.  They are
read from (highest priority first):

  1. Environment variables, e.g. ``OPENAI_API_KEY=sk-...``
  2. A ``.env`` file in the working directory

Field ``database_url`` maps to env var ``DATABASE_URL`` and so on.
Tuning knobs (caps, timeouts, chunk sizes) live in ``config/config.yaml``
and are resolved by :mod:`runbook_rag.config.loader`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """runbook-rag application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Embeddings ===
    # Empty key = "not configured"; ingestion and search fail with a
    # ConfigurationError before doing any work.
    embedding_provider: str = "openai"  # "openai" or "ollama"
    openai_api_key: str = ""
    openai_base_url: str = ""  # OpenAI-compatible gateways
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    ollama_base_url: str = "http://localhost:11434"
    ollama_embedding_model: str = "nomic-embed-text"

    # === Storage ===
    store_backend: str = "postgres"  # "postgres" or "sqlite"
    database_url: str = ""
    db_pool_min_size: int = 1
    db_pool_max_size: int = 4
    sqlite_db_path: str = "data/runbook_rag.db"
    auto_migrate: bool = True

    # === Raw file retention (optional) ===
    object_store_backend: str = "none"  # "none", "local" or "http"
    object_store_dir: str = "data/uploads"
    object_store_url: str = ""
    object_store_token: str = ""

    # === App Config ===
    config_path: str = "config/config.yaml"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"
    cors_allowed_origins: list[str] = ["*"]

    def embedding_configured(self) -> bool:
        """Return ``True`` when the selected embedding backend has what it needs."""
        if self.embedding_provider == "ollama":
            return bool(self.ollama_base_url)
        return bool(self.openai_api_key)
