# h1ql/core/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "H1QL"
    env: Literal["dev", "prod", "test"] = "dev"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =============================================================================
    # Query parsing / restriction
    # =============================================================================

    sql_dialect: str = Field(
        default="postgres", description="sqlglot dialect used to read query text"
    )
    max_query_depth: int = Field(
        default=50, description="Maximum nesting depth of an accepted query"
    )
    max_rows: int = Field(
        default=1000, description="Upper bound applied to the root LIMIT"
    )

    # =============================================================================
    # Policy Settings
    # =============================================================================

    policies_file: Path = Field(
        default=Path("./policies.yaml"),
        description="YAML or JSON file holding row/column rules",
    )
    default_schema: str = Field(
        default="public",
        description="Schema assumed for unqualified table names",
    )

    # Cache settings
    compile_cache_enabled: bool = Field(
        default=True, description="Memoize compiled queries per requester"
    )
    compile_cache_ttl: int = Field(default=300, description="Cache TTL in seconds")
    compile_cache_maxsize: int = Field(
        default=10000, description="Maximum cache entries"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
