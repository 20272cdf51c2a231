"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_AI_CONFIG_DIR = Path(__file__).resolve().parents[2] / "ai_config"


class Settings(BaseSettings):
    # ── Postgres (flip history) ──────────────────────────
    postgres_user: str = "flips"
    postgres_password: str = "flips_pw"
    postgres_db: str = "flips"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    # ── Remote SQL generation ────────────────────────────
    sql_endpoint_url: str = "http://localhost:3002/api/generate-sql"
    sql_endpoint_timeout_seconds: float = 30.0
    sql_cache_ttl_seconds: float = 600.0
    sql_cache_max_size: int = 256

    # ── Hybrid pipeline tuning ───────────────────────────
    ai_config_dir: Path = _DEFAULT_AI_CONFIG_DIR
    timezone: str = "UTC"
    auto_confirm_threshold: float = 0.65
    clarification_confidence_boost: float = 0.1
    fallback_max_query_length: int = 400
    refinement_short_query_length: int = 50

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
