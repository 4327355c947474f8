"""
Settings for Signal Copilot, read from the environment and an optional .env file.

Every scoring threshold used by the pipeline lives here rather than in the code
that applies it.
"""

from typing import Dict, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Every tunable of the pipeline, overridable by upper- or lower-case env vars."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Runtime
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(default="sqlite:///./signalcopilot.db", description="SQLAlchemy connection URL")
    db_pool_size: int = Field(default=10, description="Connection pool size (server databases only)")
    db_max_overflow: int = Field(default=20, description="Maximum overflow connections")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")

    # Signal extraction
    confidence_by_tier: Dict[str, float] = Field(
        default={
            "official": 1.00,
            "premium": 0.90,
            "standard": 0.70,
            "social": 0.40,
            "unknown": 0.50,
        },
        description="Base confidence prior per source tier",
    )
    dollar_magnitude_tiers: List[Tuple[float, int]] = Field(
        default=[(5_000_000_000, 3), (1_000_000_000, 2), (100_000_000, 1)],
        description="(minimum dollar amount, magnitude) pairs, largest first",
    )
    percent_magnitude_tiers: List[Tuple[float, int]] = Field(
        default=[(15.0, 3), (10.0, 2), (0.0, 1)],
        description="(minimum percent change, magnitude) pairs, largest first",
    )

    # Impact
    concentration_threshold: float = Field(default=0.15, description="Exposure above which the concentration multiplier applies")
    concentration_multiplier: float = Field(default=1.2, description="Exposure multiplier for concentrated positions")

    # Consensus
    consensus_window_hours: int = Field(default=6, description="Window (hours) for grouping same-event articles")
    consensus_major_source_count: int = Field(default=3, description="Sources needed for the major consensus bonus")
    consensus_minor_source_count: int = Field(default=2, description="Sources needed for the minor consensus bonus")
    consensus_agreement_threshold: float = Field(default=0.75, description="Stance agreement needed for any bonus")
    consensus_major_bonus: float = Field(default=0.15, description="Confidence bonus for broad agreement")
    consensus_minor_bonus: float = Field(default=0.10, description="Confidence bonus for two agreeing sources")

    # Portfolio analysis
    recommendation_mild_band: float = Field(default=0.15, description="|avg impact| at which buy/sell starts")
    recommendation_strong_band: float = Field(default=0.5, description="|avg impact| at which strong buy/sell starts")
    recommendation_confidence_saturation: int = Field(default=5, description="News count at which confidence stops growing")
    analysis_lookback_days: int = Field(default=7, description="Impact window used for recommendations")
    max_key_signals: int = Field(default=3, description="Key signals reported per recommendation")

    # Historical analogs
    analog_lookback_days: int = Field(default=365, description="How far back analog events are searched")
    analog_min_matches: int = Field(default=3, description="Minimum analogs before a pattern is reported")
    analog_max_events: int = Field(default=50, description="Upper bound on analog events considered")

    # Alerts
    high_impact_threshold: float = Field(default=0.7, description="|impact score| for high-impact alerts")
    high_impact_limit: int = Field(default=5, description="Top-N impacts included in a high-impact alert")
    alert_window_hours: int = Field(default=24, description="Lookback window for alerts and digests")
    digest_limit: int = Field(default=20, description="Impacts considered for the daily digest")
    digest_top_events: int = Field(default=10, description="Events listed in the digest body")

    # Ingestion
    cluster_similarity_threshold: float = Field(default=0.5, description="Headline Jaccard similarity that joins an unclustered article to a cluster")
    provider_max_workers: int = Field(default=4, description="News providers fetched in parallel")

    # Task queue / scheduler
    task_max_workers: int = Field(default=4, description="Worker threads for job handlers")
    task_max_attempts: int = Field(default=3, description="Attempts per job for retryable failures")
    task_retry_min_seconds: float = Field(default=1.0, description="Minimum retry backoff")
    task_retry_max_seconds: float = Field(default=30.0, description="Maximum retry backoff")
    scheduler_enabled: bool = Field(default=True, description="Enable recurring jobs")
    news_fetch_interval_minutes: int = Field(default=30, description="News fetch interval")
    alert_check_interval_minutes: int = Field(default=60, description="High-impact alert interval")
    digest_hour_utc: int = Field(default=9, description="Hour (UTC) the daily digest is generated")

    @field_validator("confidence_by_tier")
    @classmethod
    def validate_confidences(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Confidences are probabilities; unknown tier must be present as fallback."""
        for tier, value in v.items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"confidence for tier '{tier}' must be within [0, 1], got {value}")
        if "unknown" not in v:
            raise ValueError("confidence_by_tier must define an 'unknown' fallback")
        return {tier.lower(): value for tier, value in v.items()}

    @field_validator("dollar_magnitude_tiers", "percent_magnitude_tiers")
    @classmethod
    def validate_tiers(cls, v: List[Tuple[float, int]]) -> List[Tuple[float, int]]:
        """Tier tables are evaluated top-down, so they must be sorted largest first."""
        if not v:
            raise ValueError("magnitude tier table cannot be empty")
        thresholds = [threshold for threshold, _ in v]
        if thresholds != sorted(thresholds, reverse=True):
            raise ValueError("magnitude tiers must be ordered by descending threshold")
        for _, magnitude in v:
            if magnitude not in (1, 2, 3):
                raise ValueError(f"magnitude must be 1, 2 or 3, got {magnitude}")
        return v

    @field_validator("concentration_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("concentration_multiplier must be >= 1.0")
        return v

    @model_validator(mode="after")
    def validate_bands(self) -> "Settings":
        """Recommendation bands are symmetric around zero, so only 0 < mild < strong is needed."""
        if not 0.0 < self.recommendation_mild_band < self.recommendation_strong_band:
            raise ValueError(
                "recommendation bands must satisfy 0 < recommendation_mild_band < recommendation_strong_band"
            )
        if self.consensus_minor_source_count >= self.consensus_major_source_count:
            raise ValueError("consensus_minor_source_count must be below consensus_major_source_count")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


settings = Settings()
