"""
Alert Domain Model - alert configurations, channels, escalation policy and
the alert records themselves.

Uses Pydantic for validation so malformed configurations are rejected when
they are created instead of when they first match.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, model_validator

from pipewatch.core.domain.errors import ConfigurationInvalid

AlertType = Literal["anomaly", "trend", "sla", "cost", "custom"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
AlertStatus = Literal["triggered", "acknowledged", "escalating", "resolved"]
ChannelType = Literal["email", "chat", "webhook", "sms", "inapp"]
ResolutionType = Literal["manual", "auto", "timeout", "escalation_resolved"]

SEVERITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}
SLA_SEVERITY_ORDER: dict[str, int] = {"minor": 0, "major": 1, "critical": 2}
PRIORITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Thresholds (one variant per alert type) ---

class AnomalyThresholds(BaseModel):
    kind: Literal["anomaly"] = "anomaly"
    min_severity: AlertSeverity = "medium"
    min_confidence: float = Field(default=0.0, ge=0, le=1)
    min_anomalies: int = Field(default=1, ge=1)


class TrendThresholds(BaseModel):
    kind: Literal["trend"] = "trend"
    directions: list[Literal["increasing", "decreasing"]] = Field(default_factory=lambda: ["increasing"], min_length=1)
    min_change_rate: float = Field(default=10.0, ge=0, description="Absolute percent of mean per day")
    min_correlation: float = Field(default=0.5, ge=0, le=1)


class SLAThresholds(BaseModel):
    kind: Literal["sla"] = "sla"
    min_severity: Literal["minor", "major", "critical"] = "minor"
    minor_below: float = Field(default=10.0, gt=0)
    major_below: float = Field(default=25.0, gt=0)

    @model_validator(mode="after")
    def _ordered_bands(self) -> "SLAThresholds":
        if self.major_below <= self.minor_below:
            raise ValueError("major_below must be greater than minor_below")
        return self


class CostThresholds(BaseModel):
    kind: Literal["cost"] = "cost"
    min_efficiency_score: float = Field(default=80.0, ge=0, le=100)
    max_total_cost: float | None = Field(default=None, gt=0)
    min_opportunity_priority: Literal["low", "medium", "high"] | None = "high"


class CustomThresholds(BaseModel):
    kind: Literal["custom"] = "custom"
    value: float
    comparison: Literal["above", "below"] = "above"


AlertThresholds = Annotated[
    Union[AnomalyThresholds, TrendThresholds, SLAThresholds, CostThresholds, CustomThresholds],
    Field(discriminator="kind"),
]


# --- Channels ---

class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay_seconds: float = Field(default=5.0, ge=0)
    backoff: Literal["exponential", "fixed"] = "exponential"
    max_delay_seconds: float = Field(default=30.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)


class ChannelFilters(BaseModel):
    severities: list[AlertSeverity] | None = None
    types: list[AlertType] | None = None
    pipeline_ids: list[str] | None = None


class ChannelConfig(BaseModel):
    id: str = Field(min_length=1)
    type: ChannelType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    filters: ChannelFilters = Field(default_factory=ChannelFilters)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


# --- Escalation ---

class EscalationStage(BaseModel):
    delay_minutes: float = Field(gt=0, description="Minutes after the previous stage (or creation)")
    channels: list[str] = Field(default_factory=list)
    notify_roles: list[str] = Field(default_factory=list)
    notify_users: list[str] = Field(default_factory=list)
    requires_acknowledgment: bool = True


class EscalationPolicy(BaseModel):
    enabled: bool = False
    stages: list[EscalationStage] = Field(default_factory=list)
    max_escalations: int = Field(default=2, ge=0)
    auto_resolve: bool = False
    auto_resolve_timeout_minutes: float = Field(default=240.0, gt=0)

    def stage_offsets(self) -> list[float]:
        """Cumulative minutes from alert creation at which each stage becomes due."""
        offsets, total = [], 0.0
        for stage in self.stages:
            total += stage.delay_minutes
            offsets.append(total)
        return offsets

    @property
    def stage_limit(self) -> int:
        return min(len(self.stages), self.max_escalations)


class AlertFilters(BaseModel):
    pipeline_ids: list[str] | None = None
    environments: list[str] | None = None
    tags: list[str] | None = None


class RateLimitConfig(BaseModel):
    enabled: bool = True
    max_alerts_per_hour: int = Field(default=5, ge=1)
    max_alerts_per_day: int = Field(default=20, ge=1)
    cooldown_minutes: float = Field(default=10.0, ge=0)
    deduplication_window_minutes: float = Field(default=30.0, ge=0)


class AlertConfiguration(BaseModel):
    """Operator-defined rule turning analytics results into alerts."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    description: str = ""
    type: AlertType
    severity: AlertSeverity = "medium"
    enabled: bool = True
    thresholds: AlertThresholds
    channels: list[ChannelConfig] = Field(min_length=1)
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    filters: AlertFilters = Field(default_factory=AlertFilters)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _tag_thresholds(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data:
            thresholds = data.get("thresholds")
            if thresholds is None and data["type"] != "custom":
                thresholds = {}
            if isinstance(thresholds, dict):
                thresholds = {**thresholds}
                thresholds.setdefault("kind", data["type"])
                data = {**data, "thresholds": thresholds}
        return data

    @model_validator(mode="after")
    def _consistent(self) -> "AlertConfiguration":
        if self.thresholds.kind != self.type:
            raise ValueError(f"thresholds of kind '{self.thresholds.kind}' do not match alert type '{self.type}'")

        ids = [c.id for c in self.channels]
        if len(ids) != len(set(ids)):
            raise ValueError("channel ids must be unique within a configuration")

        known = set(ids)
        for i, stage in enumerate(self.escalation.stages):
            missing = [c for c in stage.channels if c not in known]
            if missing:
                raise ValueError(f"escalation stage {i + 1} references unknown channels: {missing}")
        if self.escalation.enabled and not self.escalation.stages:
            raise ValueError("escalation is enabled but no stages are defined")
        return self

    def channel(self, channel_id: str) -> ChannelConfig | None:
        return next((c for c in self.channels if c.id == channel_id), None)


# --- Alerts ---

class AlertContext(BaseModel):
    """Where a signal came from; matched against configuration filters."""

    pipeline_id: str | None = None
    environment: str | None = None
    tags: list[str] = Field(default_factory=list)
    job_id: str | None = None
    execution_id: str | None = None


class AlertDetails(BaseModel):
    metric: str
    trigger_value: float
    threshold: float | None = None
    pipeline_id: str | None = None
    severity: AlertSeverity | None = None
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationRecord(BaseModel):
    channel_id: str
    channel_type: ChannelType
    stage: int = 0
    delivered: bool
    attempts: int = 0
    error: str | None = None
    sent_at: datetime = Field(default_factory=utcnow)


class AlertEvent(BaseModel):
    at: datetime
    action: Literal["created", "coalesced", "escalated", "acknowledged", "resolved"]
    actor: str | None = None
    detail: str = ""


class Acknowledgment(BaseModel):
    actor: str
    at: datetime
    comment: str | None = None


class Resolution(BaseModel):
    actor: str
    at: datetime
    resolution_type: ResolutionType
    comment: str | None = None
    root_cause: str | None = None
    actions_taken: list[str] = Field(default_factory=list)


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    configuration_id: str
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus = "triggered"
    title: str
    message: str
    created_at: datetime
    updated_at: datetime
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    escalation_stage: int = 0
    last_escalated_at: datetime | None = None
    details: AlertDetails
    context: AlertContext = Field(default_factory=AlertContext)
    occurrences: int = 1
    acknowledgment: Acknowledgment | None = None
    resolution: Resolution | None = None
    notifications: list[NotificationRecord] = Field(default_factory=list)
    history: list[AlertEvent] = Field(default_factory=list)

    @property
    def dedup_key(self) -> tuple[str, str, str | None]:
        return (self.configuration_id, self.details.metric, self.details.pipeline_id)

    @property
    def is_open(self) -> bool:
        return self.status != "resolved"

    def record(self, at: datetime, action: str, actor: str | None = None, detail: str = "") -> None:
        self.history.append(AlertEvent(at=at, action=action, actor=actor, detail=detail))
        self.updated_at = at


class AlertQuery(BaseModel):
    """Filters for active/history queries."""

    type: AlertType | None = None
    severity: AlertSeverity | None = None
    status: AlertStatus | None = None
    configuration_id: str | None = None
    pipeline_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, alert: Alert) -> bool:
        if self.type and alert.type != self.type:
            return False
        if self.severity and alert.severity != self.severity:
            return False
        if self.status and alert.status != self.status:
            return False
        if self.configuration_id and alert.configuration_id != self.configuration_id:
            return False
        if self.pipeline_id and alert.details.pipeline_id != self.pipeline_id:
            return False
        if self.since and alert.created_at < self.since:
            return False
        if self.until and alert.created_at > self.until:
            return False
        return True


def parse_alert_configuration(data: dict[str, Any] | AlertConfiguration) -> AlertConfiguration:
    """Validate raw input into an AlertConfiguration, raising ConfigurationInvalid."""
    if isinstance(data, AlertConfiguration):
        return data
    try:
        return AlertConfiguration.model_validate(data)
    except ValidationError as e:
        messages = []
        for err in e.errors()[:3]:
            loc = ".".join(str(x) for x in err["loc"])
            messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        raise ConfigurationInvalid(
            f"Invalid alert configuration: {'; '.join(messages)}",
            configuration=data.get("name") if isinstance(data, dict) else None,
        ) from e
