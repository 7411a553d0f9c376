"""
Configuration settings for the GapScan backend.
Loads environment variables and provides application-wide settings.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration (stores finished gap reports)
    DATABASE_URL: str = "sqlite+aiosqlite:///./gapscan.db"

    # Corpus Configuration
    VAULT_DIR: str = "./vault"
    EMBEDDINGS_DIR: str = "./vault/09_Embedded"
    DOCUMENT_EXTENSIONS: str = ".md"
    EXCLUDE_FOLDERS: str = "06_Meta,09_Embedded,templates,.obsidian"
    READ_BATCH_SIZE: int = 50  # concurrent reads per batch

    # Clustering Configuration
    CLUSTER_COUNT: int = 0  # 0 = auto: round(sqrt(n / 2)) clamped to [3, 20]
    SPARSITY_THRESHOLD: float = 0.3
    MAX_REGIONS: int = 10
    USE_KMEANS_PLUS_PLUS: bool = True
    # None keeps K-means++ unseeded; set an int for reproducible runs
    CLUSTERING_SEED: Optional[int] = None
    # "zero" keeps the origin-collapse behaviour, "farthest" re-seeds
    EMPTY_CLUSTER_STRATEGY: str = "zero"

    # Link Analysis Configuration
    MIN_MENTIONS: int = 2
    MAX_CONCEPTS: int = 50

    # Report Configuration
    MAX_GAPS: int = 50
    ENRICH_CONCEPT_LIMIT: int = 10

    # Suggestion (LLM) Configuration
    LLM_ENABLED: bool = True
    LLM_PROVIDER: str = "ollama"  # ollama | openai | claude | gemini | grok
    LLM_API_KEY: str = ""
    LLM_MODEL: str = ""  # empty = provider default
    LLM_BASE_URL: str = ""  # empty = provider default endpoint
    LLM_TIMEOUT: int = 60
    LLM_MAX_TOKENS: int = 1024
    OLLAMA_BASE_URL: str = "http://localhost:11434"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"
    DEFAULT_SESSION_ID: str = "default"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def get_allowed_origins(self) -> List[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    def get_exclude_folders(self) -> List[str]:
        """Parse EXCLUDE_FOLDERS string into a list, dropping blanks."""
        return [f.strip() for f in self.EXCLUDE_FOLDERS.split(",") if f.strip()]

    def get_document_extensions(self) -> List[str]:
        """Parse DOCUMENT_EXTENSIONS into lower-cased suffixes."""
        return [
            e.strip().lower() for e in self.DOCUMENT_EXTENSIONS.split(",") if e.strip()
        ]


# Global settings instance
settings = Settings()
