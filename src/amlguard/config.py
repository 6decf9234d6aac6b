"""
AMLGuard configuration management using pydantic-settings.

Detection thresholds, time windows and risk-band cutoffs are validated at
construction time so that a malformed configuration fails before any batch
is started.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from amlguard.schemas.records import RiskBands

DEFAULT_HIGH_RISK_JURISDICTIONS = [
    "Cayman Islands",
    "Panama",
    "British Virgin Islands",
    "Belize",
    "Seychelles",
    "Vanuatu",
    "Marshall Islands",
    "Cyprus",
]


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AMLGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    log_level: str = Field(default="INFO", description="Logging level")

    # Reference lists
    high_risk_jurisdictions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_HIGH_RISK_JURISDICTIONS),
        description="Jurisdictions treated as high risk (case-insensitive)",
    )
    vague_description_phrases: list[str] = Field(
        default_factory=lambda: [
            "consulting", "services", "fees", "commission", "general", "miscellaneous",
        ],
        description="Phrases that make a payment description vague",
    )
    suspicious_description_keywords: list[str] = Field(
        default_factory=lambda: [
            "urgent", "fast", "immediate", "offshore", "confidential", "private",
        ],
        description="Keywords that make a payment description suspicious",
    )

    # Amount thresholds
    reporting_threshold: float = Field(
        default=10000.0, description="Regulatory reporting threshold"
    )
    structuring_band: float = Field(
        default=0.9,
        description="Fraction of the reporting threshold where structuring starts",
    )
    small_transaction_threshold: float = Field(
        default=3000.0, description="Upper bound for a smurfing-sized deposit"
    )

    # Time windows per typology
    structuring_window_days: int = Field(default=7, description="Structuring window")
    round_trip_window_days: int = Field(default=7, description="Round-trip span")
    smurfing_window_days: int = Field(default=14, description="Smurfing window")
    layering_window_hours: int = Field(default=72, description="Layering envelope")
    fan_window_hours: int = Field(default=72, description="Fan-in/fan-out window")
    trade_window_days: int = Field(default=180, description="Trade-based window")

    # Risk bands
    risk_band_medium: float = Field(default=40.0, description="Lowest medium score")
    risk_band_high: float = Field(default=70.0, description="Lowest high score")
    risk_band_critical: float = Field(default=85.0, description="Lowest critical score")

    # Alerting
    transaction_alert_threshold: float = Field(
        default=70.0, description="Transaction score that raises an alert"
    )
    entity_alert_threshold: float = Field(
        default=75.0, description="Entity score that raises an alert"
    )
    entity_alert_cooldown_hours: int = Field(
        default=24, description="Suppress repeat entity alerts within this window"
    )

    # Scoring and traversal limits
    new_entity_days: int = Field(
        default=90, description="Counterparties younger than this are newly created"
    )
    min_volume_samples: int = Field(
        default=5, description="Minimum transactions for volume statistics"
    )
    min_structuring_transactions: int = Field(
        default=3, description="Minimum transactions in a structuring window"
    )
    max_traversal_depth: int = Field(
        default=8, description="Maximum hops explored by graph searches"
    )
    max_paths_per_start: int = Field(
        default=500, description="Maximum paths explored from one start entity"
    )
    risk_update_delta: float = Field(
        default=5.0, description="Minimum score change before writing back"
    )
    run_timeout_seconds: Optional[float] = Field(
        default=None, description="Timeout for a full detection run"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept only standard logging level names."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("high_risk_jurisdictions")
    @classmethod
    def normalize_jurisdictions(cls, v: list[str]) -> list[str]:
        """Strip whitespace and drop blanks."""
        return [j.strip() for j in v if j and j.strip()]

    @field_validator(
        "reporting_threshold",
        "small_transaction_threshold",
        "structuring_window_days",
        "round_trip_window_days",
        "smurfing_window_days",
        "layering_window_hours",
        "fan_window_hours",
        "trade_window_days",
        "entity_alert_cooldown_hours",
        "new_entity_days",
        "min_volume_samples",
        "min_structuring_transactions",
        "max_traversal_depth",
        "max_paths_per_start",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("structuring_band")
    @classmethod
    def validate_structuring_band(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("structuring_band must be between 0 and 1")
        return v

    @field_validator("run_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("run_timeout_seconds must be positive")
        return v

    @model_validator(mode="after")
    def validate_risk_bands(self) -> "Settings":
        """Band cutoffs must be strictly increasing inside (0, 100)."""
        if not 0 < self.risk_band_medium < self.risk_band_high < self.risk_band_critical < 100:
            raise ValueError(
                "Risk band cutoffs must satisfy 0 < medium < high < critical < 100"
            )
        if self.small_transaction_threshold >= self.reporting_threshold:
            raise ValueError(
                "small_transaction_threshold must be below reporting_threshold"
            )
        return self

    def risk_bands(self) -> RiskBands:
        """Banding used for every score-to-level conversion."""
        return RiskBands(
            medium=self.risk_band_medium,
            high=self.risk_band_high,
            critical=self.risk_band_critical,
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
