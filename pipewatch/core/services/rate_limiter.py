"""
Rate limiting and deduplication for alert creation.

State is partitioned by configuration id; each partition has its own lock so
concurrent triggers for different configurations never contend. Every
check-and-record sequence runs under the partition lock.
"""

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from pipewatch.core.domain.alert import RateLimitConfig

DedupKey = tuple[str, str, str | None]  # (configuration id, metric, pipeline id)

Action = Literal["create", "coalesce", "suppress"]


@dataclass(frozen=True)
class Decision:
    action: Action
    alert_id: str | None = None
    reason: str | None = None  # cooldown, hourly_limit, daily_limit


@dataclass
class _Partition:
    lock: threading.Lock = field(default_factory=threading.Lock)
    created: deque = field(default_factory=deque)
    open_alerts: dict = field(default_factory=dict)  # key -> (alert id, created at)
    last_event: dict = field(default_factory=dict)  # key -> last create/resolve time


class AlertRateLimiter:

    def __init__(self):
        self._partitions: dict[str, _Partition] = {}
        self._registry_lock = threading.Lock()
        self.suppressed: Counter = Counter()
        self.suppressed_by_configuration: Counter = Counter()
        self.coalesced = 0

    def _partition(self, configuration_id: str) -> _Partition:
        with self._registry_lock:
            part = self._partitions.get(configuration_id)
            if part is None:
                part = self._partitions[configuration_id] = _Partition()
            return part

    def admit(self, limits: RateLimitConfig, key: DedupKey, now: datetime, new_alert_id: str) -> Decision:
        """
        Decide whether a qualifying trigger creates ``new_alert_id``, is
        coalesced into an open alert, or is suppressed. A ``create`` decision
        is recorded before the lock is released.
        """
        configuration_id = key[0]
        part = self._partition(configuration_id)
        with part.lock:
            open_alert = part.open_alerts.get(key)
            if limits.enabled and open_alert is not None:
                alert_id, created_at = open_alert
                if now - created_at <= timedelta(minutes=limits.deduplication_window_minutes):
                    self.coalesced += 1
                    return Decision("coalesce", alert_id=alert_id)

            if limits.enabled:
                reason = self._limit_reason(part, limits, key, now)
                if reason is not None:
                    self.suppressed[reason] += 1
                    self.suppressed_by_configuration[configuration_id] += 1
                    return Decision("suppress", reason=reason)

            part.created.append(now)
            part.open_alerts[key] = (new_alert_id, now)
            part.last_event[key] = now
            return Decision("create", alert_id=new_alert_id)

    def _limit_reason(self, part: _Partition, limits: RateLimitConfig, key: DedupKey, now: datetime) -> str | None:
        last = part.last_event.get(key)
        if last is not None and now - last < timedelta(minutes=limits.cooldown_minutes):
            return "cooldown"

        day_ago = now - timedelta(days=1)
        while part.created and part.created[0] <= day_ago:
            part.created.popleft()
        hour_ago = now - timedelta(hours=1)
        if sum(1 for t in part.created if t > hour_ago) >= limits.max_alerts_per_hour:
            return "hourly_limit"
        if len(part.created) >= limits.max_alerts_per_day:
            return "daily_limit"
        return None

    def resolved(self, key: DedupKey, alert_id: str, now: datetime) -> None:
        """Close the dedup entry for ``alert_id`` and start its cooldown."""
        part = self._partition(key[0])
        with part.lock:
            current = part.open_alerts.get(key)
            if current is not None and current[0] == alert_id:
                del part.open_alerts[key]
            part.last_event[key] = now

    def restore(self, key: DedupKey, alert_id: str, created_at: datetime) -> None:
        """Rebuild state for an alert that was open before a restart."""
        part = self._partition(key[0])
        with part.lock:
            part.created.append(created_at)
            part.open_alerts[key] = (alert_id, created_at)
            previous = part.last_event.get(key)
            part.last_event[key] = max(previous, created_at) if previous else created_at

    def forget(self, configuration_id: str) -> None:
        with self._registry_lock:
            self._partitions.pop(configuration_id, None)
