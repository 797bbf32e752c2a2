"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

ORDER_NUMBER_HEADER = "受注番号"
CASE_CODE_HEADER = "Ⅱ　MC　題材コード"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Survey Precedent Preparation API"
    database_url: str = "sqlite+aiosqlite:///./data/survey_prep.db"
    openai_api_key: SecretStr | None = None
    openai_embedding_model: str = "text-embedding-3-large"
    embedding_dim: int = 3072

    csv_required_headers: list[str] = Field(
        default_factory=lambda: [ORDER_NUMBER_HEADER, CASE_CODE_HEADER]
    )
    csv_encoding_tokens: list[str] = Field(
        default_factory=lambda: [ORDER_NUMBER_HEADER, "題材コード", "題材名"]
    )
    csv_probe_max_bytes: int = 64 * 1024
    csv_probe_min_bytes: int = 8 * 1024
    csv_chunk_size: int = 64 * 1024

    ingest_batch_size: int = 1000
    ingest_header_skip_limit: int = 4
    ingest_max_row_errors: int = 10
    ingest_time_budget_s: float = 600.0

    embedding_worker_batch_size: int = 200
    embedding_concurrency: int = 15
    embedding_stale_claim_s: float = 900.0
    embedding_max_attempts: int = 3

    typical_max_clusters: int = 3
    typical_fetch_limit: int = 5000
    typical_max_buckets: int = 200
    auto_prepare_max_s: float = 420.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
