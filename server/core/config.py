"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from constants import DATASOURCE_NODE_TYPES


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    environment: str = Field(default="development", env="ENVIRONMENT")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/pipeline.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=60)

    # Execution Engine
    execution_store: Literal["database", "cache"] = Field(default="database", env="EXECUTION_STORE")
    output_cache_threshold: int = Field(default=1000, env="OUTPUT_CACHE_THRESHOLD", ge=1)
    output_cache_max_nodes: int = Field(default=10, env="OUTPUT_CACHE_MAX_NODES", ge=1)
    max_concurrency: int = Field(default=8, env="MAX_CONCURRENCY", ge=1, le=256)
    node_timeout: Optional[float] = Field(default=None, env="NODE_TIMEOUT", gt=0)
    datasource_node_types: List[str] = Field(default=sorted(DATASOURCE_NODE_TYPES), env="DATASOURCE_NODE_TYPES")
    execution_version: str = Field(default="1.0.0", env="EXECUTION_VERSION")
    notifications_enabled: bool = Field(default=True, env="NOTIFICATIONS_ENABLED")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
