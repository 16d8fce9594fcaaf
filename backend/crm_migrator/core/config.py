from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # API
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "CRM Migrator"
    VERSION: str = "0.1.0"

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str):
            return [i.strip() for i in v.split(",")]
        return v

    # Database (target CRM schema)
    DATABASE_URL: str = "sqlite:///./crm.db"

    # Target schema registry
    SCHEMA_FILE: Optional[str] = None  # Defaults to the bundled registry/crm.yaml

    # Analysis
    SAMPLE_SIZE: int = 100
    HEADER_SCAN_ROWS: int = 10
    PATTERN_MATCH_RATIO: float = 0.8

    # Mapping thresholds (confidence is 0-10)
    AUTO_ACCEPT_THRESHOLD: float = 8.0
    REVIEW_THRESHOLD: float = 5.0
    MIN_CANDIDATE_CONFIDENCE: float = 2.5
    PROCEED_GATE_MAX_LOW_RATIO: float = 0.5
    TABLE_MATCH_THRESHOLD: float = 0.75
    NAME_SIMILARITY_THRESHOLD: float = 0.85

    # Import
    BATCH_SIZE: int = 50
    BATCH_TIMEOUT_SECONDS: Optional[float] = None
    BATCH_RETRIES: int = 1

    # Pre-migration sample validation (error rates are 0-1)
    PRE_VALIDATION_SAMPLE_SIZE: int = 100
    PRE_VALIDATION_WARN_RATE: float = 0.1
    PRE_VALIDATION_CRITICAL_RATE: float = 0.25

    # Progress streaming
    SUBSCRIBER_BUFFER_SIZE: int = 1000
    SSE_PING_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # Console only when unset

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    @field_validator("BATCH_SIZE", "SAMPLE_SIZE", "PRE_VALIDATION_SAMPLE_SIZE")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


settings = Settings()
