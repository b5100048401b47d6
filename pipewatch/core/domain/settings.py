from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ZScoreBands(BaseModel):
    medium: float = 3.0
    high: float = 4.0
    critical: float = 5.0


class AnomalySettings(BaseModel):
    zscore_threshold: float = Field(default=2.5, gt=0)
    zscore_bands: ZScoreBands = Field(default_factory=ZScoreBands)
    percentile_low: float = Field(default=5.0, ge=0, le=100)
    percentile_high: float = Field(default=95.0, ge=0, le=100)
    percentile_margin: float = Field(default=0.5, ge=0, description="Band widths beyond the edge before a point is flagged")
    iqr_multiplier: float = Field(default=1.5, gt=0)
    min_data_points: int = Field(default=10, ge=3)


class TrendSettings(BaseModel):
    min_data_points: int = Field(default=5, ge=3)
    stable_threshold: float = Field(default=0.01, ge=0, description="Relative change over the window treated as flat")
    confidence_level: float = Field(default=0.95, gt=0, lt=1)


class BenchmarkSettings(BaseModel):
    min_samples: int = Field(default=5, ge=1)
    excellent: float = 90.0
    good: float = 70.0
    average: float = 40.0
    below_average: float = 20.0


class SLASettings(BaseModel):
    minor_below: float = Field(default=10.0, gt=0)
    major_below: float = Field(default=25.0, gt=0)
    frequency_window_hours: float = Field(default=24.0, gt=0)

    @model_validator(mode="after")
    def _ordered_bands(self) -> "SLASettings":
        if self.major_below <= self.minor_below:
            raise ValueError("major_below must be greater than minor_below")
        return self


class CostSettings(BaseModel):
    base_rate_per_minute: float = Field(default=0.10 / 60, ge=0)
    resource_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"cpu": 0.02, "memory": 0.01, "storage": 0.001, "network": 0.005}
    )
    target_low: float = 60.0
    target_high: float = 85.0
    long_execution_minutes: float = 30.0
    min_history: int = 5


class AnalyticsSettings(BaseModel):
    anomaly: AnomalySettings = Field(default_factory=AnomalySettings)
    trend: TrendSettings = Field(default_factory=TrendSettings)
    benchmark: BenchmarkSettings = Field(default_factory=BenchmarkSettings)
    sla: SLASettings = Field(default_factory=SLASettings)
    cost: CostSettings = Field(default_factory=CostSettings)
    cache_size: int = Field(default=256, ge=0)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)


class SchedulerSettings(BaseModel):
    max_concurrent_jobs: int = Field(default=5, ge=1)
    queue_size: int = Field(default=50, ge=1)
    worker_threads: int = Field(default=4, ge=1)
    retry_attempts: int = Field(default=3, ge=1, description="Total attempts per firing")
    retry_min_wait_seconds: float = Field(default=1.0, ge=0)
    retry_max_wait_seconds: float = Field(default=30.0, ge=0)
    job_timeout_seconds: float = Field(default=300.0, gt=0)
    extract_timeout_seconds: float = Field(default=30.0, gt=0)
    history_limit: int = Field(default=50, ge=1)
    tick_seconds: float = Field(default=1.0, gt=0)


class AlertingSettings(BaseModel):
    escalation_check_seconds: float = Field(default=30.0, gt=0)
    history_retention_days: float = Field(default=30.0, gt=0)
    default_environment: str | None = "production"


class SystemSettings(BaseModel):
    """
    Global system configuration settings.
    """
    store_type: Literal["memory", "mongo"] = Field(default="memory", description="Record store backend")

    # Metrics source
    prometheus_url: str | None = Field(default=None, description="Prometheus-compatible base URL; in-memory runs when unset")
    prometheus_timeout: float = Field(default=30.0, gt=0)

    # Definitions
    definitions_file: str = Field(default="definitions.yaml", description="Jobs and alert configurations loaded at startup")

    # Mongo Store
    mongo_url: str = Field(default="mongodb://localhost:27017", description="MongoDB Connection URL")
    mongo_db_name: str = Field(default="pipewatch", description="MongoDB Database Name")

    # In-app notifications over Kafka
    kafka_bootstrap_servers: str | None = Field(default=None, description="Publish in-app notifications to Kafka when set")
    kafka_topic: str = "pipewatch.notifications"

    log_level: str = "INFO"

    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    alerting: AlertingSettings = Field(default_factory=AlertingSettings)
