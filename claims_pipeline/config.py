"""
Pipeline settings.

Values come from keyword arguments or, through from_env(), from the
environment. The CLI loads a .env file before calling from_env().
"""

import os

from pydantic import BaseModel, Field, field_validator


class PipelineSettings(BaseModel):
    """
    Runtime settings of the claims pipeline.

    Attributes:
        batch_size: Rows/records per transaction for ingestion and enrichment
        similarity_threshold: Minimum fuzzy score accepted by auto-mapping
        max_workers: Background job pool size
        rules_config: Optional YAML file with enrichment rule definitions
        log_level: Logging level name
        log_format: "json" or "text"
        metrics_port: Port for the Prometheus endpoint, None to disable
    """

    batch_size: int = Field(100, ge=1)
    similarity_threshold: float = Field(0.8, ge=0.0, le=1.0)
    max_workers: int = Field(4, ge=1)
    rules_config: str | None = None
    log_level: str = "INFO"
    log_format: str = "json"
    metrics_port: int | None = Field(None, ge=1, le=65535)

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "claims"
    db_user: str = "pipeline"
    db_password: str | None = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in {"json", "text"}:
            raise ValueError(f"log_format must be 'json' or 'text', got {v!r}")
        return fmt

    class Config:
        json_schema_extra = {
            "example": {
                "batch_size": 100,
                "similarity_threshold": 0.8,
                "max_workers": 4,
                "rules_config": "config/enrichment_rules.yaml",
                "log_level": "INFO",
                "log_format": "json",
                "metrics_port": 8000,
                "db_host": "localhost",
                "db_port": 5432,
                "db_name": "claims",
                "db_user": "pipeline"
            }
        }

    @classmethod
    def from_env(cls, **overrides) -> "PipelineSettings":
        """
        Build settings from environment variables.

        Unset variables keep the field defaults; keyword overrides win over
        the environment.
        """
        env = {
            "batch_size": os.getenv("CLAIMS_BATCH_SIZE"),
            "similarity_threshold": os.getenv("CLAIMS_SIMILARITY_THRESHOLD"),
            "max_workers": os.getenv("CLAIMS_MAX_WORKERS"),
            "rules_config": os.getenv("CLAIMS_RULES_CONFIG"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_format": os.getenv("LOG_FORMAT"),
            "metrics_port": os.getenv("METRICS_PORT"),
            "db_host": os.getenv("DB_HOST"),
            "db_port": os.getenv("DB_PORT"),
            "db_name": os.getenv("DB_NAME"),
            "db_user": os.getenv("DB_USER"),
            "db_password": os.getenv("DB_PASSWORD"),
        }
        values = {key: value for key, value in env.items() if value not in (None, "")}
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
