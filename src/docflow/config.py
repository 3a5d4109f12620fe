"""Configuration settings for Docflow.

All settings are read from ``DOCFLOW_*`` environment variables or a ``.env``
file. A single SQLite database under ``storage_dir`` holds messages,
watermarks, classifications, proposals and the documentation index.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DOCFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage directory (default: .docflow in current directory)
    storage_dir: Path = Field(default=Path(".docflow"))

    # LLM settings
    llm_api_key: str = ""
    llm_base_url: str = "https://api.deepseek.com"
    classification_model: str = "deepseek-chat"
    proposal_model: str = "deepseek-chat"
    llm_timeout_seconds: float = 120.0
    llm_max_retries: int = 3
    llm_retry_delay_seconds: float = 1.0
    llm_cache_enabled: bool = False

    # Batch windowing
    batch_window_hours: float = 24.0
    context_window_hours: float = 24.0
    max_batch_size: int = 30
    context_message_limit: int = 100
    initial_lookback_days: int = 7
    excluded_stream_ids: list[str] = Field(default_factory=lambda: ["pipeline-test"])

    # Conversation grouping
    conversation_time_window_minutes: float = 15.0
    max_conversation_size: int = 20
    min_conversation_gap_minutes: float = 5.0

    # Retrieval
    rag_top_k: int = 5

    # Pipeline
    project_name: str = "the project"
    pipeline_config_path: Path | None = None

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return self.storage_dir / "docflow.db"

    @property
    def db_url(self) -> str:
        """SQLAlchemy async URL for the database."""
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def log_dir(self) -> Path:
        """Directory for JSONL batch logs."""
        return self.storage_dir / "logs"

    @property
    def cache_dir(self) -> Path:
        """Directory for cached LLM responses."""
        return self.storage_dir / "llm-cache"

    def ensure_storage_dir(self) -> None:
        """Create storage directory if it doesn't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
