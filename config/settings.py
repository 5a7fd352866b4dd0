# DocExtract/config/settings.py

import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
ENV_FILE_PATH = os.path.join(PROJECT_ROOT, '.env')


class Settings(BaseSettings):
    # Acceptance and lifecycle thresholds
    acceptance_threshold: float = Field(default=0.5)
    min_sample_size: int = Field(default=5, ge=1)
    deactivation_floor: float = Field(default=0.3)

    # Confidence scoring weights
    success_weight: float = Field(default=0.9)
    supplier_bonus: float = Field(default=0.1)
    unproven_weight: float = Field(default=0.6)
    ambiguity_penalty: float = Field(default=0.15)
    max_ambiguity_penalty: float = Field(default=0.45)
    include_generic_patterns: bool = Field(default=True)

    # Pattern store
    pattern_db_path: str = Field(
        default=os.path.join(PROJECT_ROOT, "data", "patterns.sqlite")
    )
    pattern_db_dsn: Optional[str] = Field(default=None)
    store_update_retries: int = Field(default=5, ge=1)
    store_retry_backoff: float = Field(default=0.01, ge=0.0)
    seed_on_startup: bool = Field(default=True)

    # Value normalisation
    date_dayfirst: bool = Field(default=True)
    date_min_year: int = Field(default=1900)
    date_max_year: int = Field(default=2100)

    # Pattern synthesis from corrections
    synthesis_context_tokens: int = Field(default=4, ge=1)
    synthesis_max_context_chars: int = Field(default=40, ge=4)

    # Batch processing
    batch_max_workers: int = Field(default=4, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_dir: Optional[str] = Field(default=os.path.join(PROJECT_ROOT, "logs"))

    model_config = SettingsConfigDict(
        env_file=ENV_FILE_PATH,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator(
        "acceptance_threshold",
        "deactivation_floor",
        "success_weight",
        "supplier_bonus",
        "unproven_weight",
        "ambiguity_penalty",
        "max_ambiguity_penalty",
    )
    @classmethod
    def _check_probability(cls, value: float) -> float:
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("value must lie within [0, 1]")
        return float(value)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value):
        text = str(value or "INFO").strip().upper()
        return text or "INFO"


try:
    settings = Settings()
except Exception as e:
    print(f"!!! FATAL ERROR: Could not load application settings from .env file: {e}")
    raise
