"""
Escalation planning.

Pure functions deciding which time-driven transitions are due for an alert at
a given instant. The alert engine applies them; keeping the decision separate
makes stage sequencing testable with simulated time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from pipewatch.core.domain.alert import Alert, EscalationPolicy, EscalationStage


@dataclass(frozen=True)
class Escalate:
    stage_number: int  # 1-based stage being entered
    stage: EscalationStage


@dataclass(frozen=True)
class AutoResolve:
    reason: str


def pending_stages(alert: Alert, policy: EscalationPolicy) -> list[EscalationStage]:
    """Stages not yet entered, within ``max_escalations``."""
    if not policy.enabled:
        return []
    return policy.stages[alert.escalation_stage:policy.stage_limit]


def continues_after_acknowledgment(alert: Alert, policy: EscalationPolicy) -> bool:
    """True when the next pending stage escalates even if acknowledged."""
    remaining = pending_stages(alert, policy)
    return bool(remaining) and not remaining[0].requires_acknowledgment


def plan(alert: Alert, policy: EscalationPolicy, now: datetime) -> list[Escalate | AutoResolve]:
    """
    Transitions due at ``now``, in order.

    Auto-resolution pre-empts escalation: an alert past its auto-resolve
    timeout is resolved without notifying further stages.
    """
    if alert.status == "resolved":
        return []

    elapsed = now - alert.created_at
    if (
        policy.auto_resolve
        and alert.acknowledged_at is None
        and elapsed >= timedelta(minutes=policy.auto_resolve_timeout_minutes)
    ):
        return [AutoResolve(reason=f"not acknowledged within {policy.auto_resolve_timeout_minutes:g} minutes")]

    if not policy.enabled:
        return []

    actions: list[Escalate | AutoResolve] = []
    offsets = policy.stage_offsets()
    index = alert.escalation_stage
    while index < policy.stage_limit and elapsed >= timedelta(minutes=offsets[index]):
        stage = policy.stages[index]
        if alert.acknowledged_at is not None and stage.requires_acknowledgment:
            break
        actions.append(Escalate(stage_number=index + 1, stage=stage))
        index += 1
    return actions


def next_due(alert: Alert, policy: EscalationPolicy) -> datetime | None:
    """Earliest instant at which ``plan`` could return something new."""
    if alert.status == "resolved":
        return None
    candidates = []
    if policy.auto_resolve and alert.acknowledged_at is None:
        candidates.append(alert.created_at + timedelta(minutes=policy.auto_resolve_timeout_minutes))
    if policy.enabled and alert.escalation_stage < policy.stage_limit:
        offset = policy.stage_offsets()[alert.escalation_stage]
        candidates.append(alert.created_at + timedelta(minutes=offset))
    return min(candidates) if candidates else None
