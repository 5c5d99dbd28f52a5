from typing import Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide configuration, loaded from STREAMRELAY_* environment variables
    (and .env). Only the composition root reads it; components receive plain
    values through their constructors.
    """
    model_config = SettingsConfigDict(
        env_prefix="STREAMRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ---------- Log store ----------
    NUM_PARTITIONS: int = Field(4, gt=0)
    LOG_BACKEND: Literal["memory", "local"] = "local"
    DATA_DIR: str = "data/streamrelay"
    MAX_SEGMENT_BYTES: int = 64 * 1024 * 1024
    RETENTION_SECONDS: Optional[float] = 24 * 3600.0
    RETENTION_BYTES: Optional[int] = None
    MAX_RECORDS_PER_PARTITION: Optional[int] = None
    WRITE_LIMIT_PER_SECOND: Optional[int] = 1000
    RETENTION_CHECK_INTERVAL_S: float = 60.0

    # ---------- Checkpoints / dead letters ----------
    CHECKPOINT_BACKEND: Literal["memory", "file", "sqlite", "valkey"] = "sqlite"
    CHECKPOINT_PATH: str = "data/streamrelay/checkpoints.db"
    CHECKPOINT_DIR: str = "data/streamrelay/checkpoints"
    DLQ_BACKEND: Literal["memory", "file", "valkey"] = "file"
    DLQ_PATH: str = "data/streamrelay/dead_letters.jsonl"
    DLQ_KEY: str = "streamrelay:dlq"

    VALKEY_HOST: str = "localhost"
    VALKEY_PORT: int = 6379
    VALKEY_PASSWORD: Optional[str] = None

    # ---------- Producer ----------
    PRODUCER_MAX_ATTEMPTS: int = Field(5, gt=0)
    PRODUCER_BASE_DELAY_S: float = 0.1
    PRODUCER_MAX_DELAY_S: float = 5.0

    # ---------- Dispatcher ----------
    CONSUMER_GROUP: str = "default"
    BATCH_SIZE: int = Field(100, gt=0)
    POLL_INTERVAL_S: float = 0.5
    MAX_RETRIES: int = Field(5, ge=0)
    RETRY_BACKOFF_S: float = 0.5
    RETRY_BACKOFF_MAX_S: float = 30.0
    HANDLER_TIMEOUT_S: Optional[float] = 30.0
    START_POSITION: Literal["earliest", "latest"] = "earliest"

    # ---------- Admin API / observability ----------
    ADMIN_HOST: str = "0.0.0.0"
    ADMIN_PORT: int = 8001
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"
    OTEL_ENABLED: bool = False


settings = Settings()
