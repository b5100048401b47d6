"""
Alert Engine - owns the alert lifecycle.

Flow for each signal:
1. Select enabled configurations of the signal's type whose filters match
2. Check the configuration thresholds
3. Rate limiter decides: create, coalesce into the open alert, or suppress
4. New alerts are dispatched to their channels in the background

Time-driven transitions (escalation stages, auto-resolve) happen in
``process_timers``, which the background loop calls periodically.
"""

import asyncio
import logging
import threading
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from pipewatch.core.domain.alert import (
    Acknowledgment,
    Alert,
    AlertConfiguration,
    AlertContext,
    AlertDetails,
    AlertQuery,
    ChannelConfig,
    Resolution,
    parse_alert_configuration,
)
from pipewatch.core.domain.errors import ConfigurationInvalid, InvalidStateTransition, NotFound, StoreUnavailable
from pipewatch.core.domain.settings import AlertingSettings
from pipewatch.core.ports.notifier import AlertPayload
from pipewatch.core.ports.record_store import ALERT_CONFIGURATIONS, ALERTS, RecordStore
from pipewatch.core.services import escalation
from pipewatch.core.services.dispatcher import ChannelDispatcher, channel_accepts
from pipewatch.core.services.matching import Signal, check_thresholds, filters_match, render
from pipewatch.core.services.rate_limiter import AlertRateLimiter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    """
    Matches signals against configurations and drives alerts from
    ``triggered`` to ``resolved``.
    """

    def __init__(
        self,
        dispatcher: ChannelDispatcher,
        store: RecordStore | None = None,
        settings: AlertingSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            dispatcher: Channel dispatcher used for all notifications
            store: Optional record store; persistence is best effort
            settings: Alerting settings
            clock: Source of the current time when ``now`` is not given
        """
        self.dispatcher = dispatcher
        self.store = store
        self.settings = settings or AlertingSettings()
        self._clock = clock
        self.limiter = AlertRateLimiter()

        self._configurations: dict[str, AlertConfiguration] = {}
        self._config_lock = threading.Lock()
        self._active: dict[str, Alert] = {}
        self._history: deque[Alert] = deque()
        self._pending: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None

        self._created = 0
        self._by_type: Counter = Counter()
        self._by_severity: Counter = Counter()
        self._escalated_count = 0
        self._acknowledged_count = 0
        self._resolution_minutes_total = 0.0
        self._resolved_count = 0
        self._notifications_sent = 0
        self._delivery_failures = 0

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    async def create_configuration(self, data: dict[str, Any] | AlertConfiguration) -> AlertConfiguration:
        """
        Validate and register a configuration.

        Raises:
            ConfigurationInvalid: malformed thresholds/channels/escalation or duplicate id
        """
        config = parse_alert_configuration(data)
        with self._config_lock:
            if config.id in self._configurations:
                raise ConfigurationInvalid("Alert configuration id already exists", configuration_id=config.id)
            self._configurations = {**self._configurations, config.id: config}
        logger.info(f"Registered alert configuration '{config.name}' ({config.id}, type={config.type})")
        await self._persist(ALERT_CONFIGURATIONS, config.id, config.model_dump(mode="json"))
        return config

    async def update_configuration(self, configuration_id: str, data: dict[str, Any]) -> AlertConfiguration:
        current = self.get_configuration(configuration_id)
        merged = {**current.model_dump(), **data, "id": configuration_id}
        config = parse_alert_configuration(merged)
        with self._config_lock:
            self._configurations = {**self._configurations, configuration_id: config}
        await self._persist(ALERT_CONFIGURATIONS, config.id, config.model_dump(mode="json"))
        return config

    async def delete_configuration(self, configuration_id: str) -> None:
        self.get_configuration(configuration_id)
        with self._config_lock:
            remaining = dict(self._configurations)
            del remaining[configuration_id]
            self._configurations = remaining
        self.limiter.forget(configuration_id)
        if self.store is not None:
            try:
                await self.store.delete(ALERT_CONFIGURATIONS, configuration_id)
            except StoreUnavailable as e:
                logger.warning(f"Could not delete configuration {configuration_id} from store: {e}")

    def get_configuration(self, configuration_id: str) -> AlertConfiguration:
        config = self._configurations.get(configuration_id)
        if config is None:
            raise NotFound("alert configuration", configuration_id)
        return config

    def list_configurations(self) -> list[AlertConfiguration]:
        return list(self._configurations.values())

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def trigger_alert(
        self,
        type: str,
        details: dict[str, Any] | AlertDetails,
        context: dict[str, Any] | AlertContext | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """
        Evaluate an externally produced signal.

        Returns:
            Id of the alert created (or coalesced into), None if nothing matched
            or the trigger was suppressed
        """
        try:
            details = details if isinstance(details, AlertDetails) else AlertDetails(**details)
            context = context if isinstance(context, AlertContext) else AlertContext(**(context or {}))
        except ValidationError as e:
            raise ConfigurationInvalid(f"Invalid alert trigger: {e.errors()[0]['msg']}", type=type) from e
        if details.pipeline_id is None:
            details.pipeline_id = context.pipeline_id
        if context.pipeline_id is None:
            context.pipeline_id = details.pipeline_id

        ids = await self.evaluate(Signal(type=type, details=details, context=context), now=now)
        return ids[0] if ids else None

    async def evaluate(self, signal: Signal, now: datetime | None = None) -> list[str]:
        """
        Evaluate a signal against every matching configuration.

        Returns:
            Ids of alerts created or coalesced into, one per matching configuration
        """
        now = now or self._clock()
        if signal.context.environment is None:
            signal.context.environment = self.settings.default_environment

        ids = []
        for config in list(self._configurations.values()):
            if not config.enabled or config.type != signal.type:
                continue
            if not filters_match(config, signal.context):
                continue
            check = check_thresholds(config, signal)
            if not check.matched:
                continue
            alert_id = self._admit(config, signal, check, now)
            if alert_id is not None:
                ids.append(alert_id)
        return ids

    def _admit(self, config: AlertConfiguration, signal: Signal, check, now: datetime) -> str | None:
        details = signal.details
        key = (config.id, details.metric, details.pipeline_id)
        decision = self.limiter.admit(config.rate_limit, key, now, str(uuid4()))

        if decision.action == "suppress":
            logger.warning(
                f"Suppressed alert for configuration {config.id} metric={details.metric} "
                f"pipeline={details.pipeline_id}: {decision.reason}"
            )
            return None

        if decision.action == "coalesce":
            alert = self._active.get(decision.alert_id)
            if alert is not None:
                alert.occurrences += 1
                alert.record(now, "coalesced", detail=f"value {details.trigger_value:g}")
                self._spawn(self._persist_alert(alert))
            return decision.alert_id

        title, message = render(config, signal, check)
        if details.threshold is None and check.threshold is not None:
            details = details.model_copy(update={"threshold": check.threshold})
        alert = Alert(
            id=decision.alert_id,
            configuration_id=config.id,
            type=config.type,
            severity=config.severity,
            title=title,
            message=message,
            created_at=now,
            updated_at=now,
            details=details,
            context=signal.context,
        )
        alert.record(now, "created", detail=check.reason)
        self._active[alert.id] = alert
        self._created += 1
        self._by_type[alert.type] += 1
        self._by_severity[alert.severity] += 1
        logger.info(f"Created alert {alert.id} '{title}' (configuration={config.id}, pipeline={details.pipeline_id})")

        self._notify(alert, config.channels, stage=0)
        return alert.id

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _notify(
        self,
        alert: Alert,
        channels: list[ChannelConfig],
        stage: int,
        roles: list[str] | None = None,
        users: list[str] | None = None,
    ) -> None:
        selected = [
            c for c in channels
            if channel_accepts(c, alert.type, alert.severity, alert.details.pipeline_id)
        ]
        payload = AlertPayload(
            alert_id=alert.id,
            configuration_id=alert.configuration_id,
            type=alert.type,
            severity=alert.severity,
            status=alert.status,
            title=alert.title,
            message=alert.message,
            metric=alert.details.metric,
            trigger_value=alert.details.trigger_value,
            threshold=alert.details.threshold,
            pipeline_id=alert.details.pipeline_id,
            created_at=alert.created_at,
            stage=stage,
            notify_roles=roles or [],
            notify_users=users or [],
        )
        self._spawn(self._deliver(alert, selected, payload))

    def _spawn(self, coro) -> None:
        # Deliveries are not tied to the caller: cancelling a job does not
        # cancel notifications it already produced.
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, alert: Alert, channels: list[ChannelConfig], payload: AlertPayload) -> None:
        records = await self.dispatcher.dispatch(channels, payload)
        for record in records:
            alert.notifications.append(record)
            if record.delivered:
                self._notifications_sent += 1
            else:
                self._delivery_failures += 1
        await self._persist_alert(alert)

    async def drain(self) -> None:
        """Wait for every in-flight delivery and persistence task."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _lookup_open(self, alert_id: str, action: str) -> Alert:
        alert = self._active.get(alert_id)
        if alert is not None:
            return alert
        if any(a.id == alert_id for a in self._history):
            raise InvalidStateTransition(f"Cannot {action} a resolved alert", alert_id=alert_id)
        raise NotFound("alert", alert_id)

    async def acknowledge_alert(
        self,
        alert_id: str,
        actor: str,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> Alert:
        """
        Record an acknowledgment.

        The status only becomes ``acknowledged`` when no pending escalation
        stage proceeds regardless of acknowledgment.

        Raises:
            NotFound: unknown alert
            InvalidStateTransition: alert resolved or already acknowledged
        """
        now = now or self._clock()
        alert = self._lookup_open(alert_id, "acknowledge")
        if alert.acknowledged_at is not None:
            raise InvalidStateTransition("Alert already acknowledged", alert_id=alert_id, by=alert.acknowledgment.actor)

        alert.acknowledged_at = now
        alert.acknowledgment = Acknowledgment(actor=actor, at=now, comment=comment)
        config = self._configurations.get(alert.configuration_id)
        if config is None or not escalation.continues_after_acknowledgment(alert, config.escalation):
            alert.status = "acknowledged"
        alert.record(now, "acknowledged", actor=actor, detail=comment or "")
        self._acknowledged_count += 1
        logger.info(f"Alert {alert.id} acknowledged by {actor}")
        await self._persist_alert(alert)
        return alert

    async def resolve_alert(
        self,
        alert_id: str,
        actor: str,
        resolution_type: str = "manual",
        comment: str | None = None,
        root_cause: str | None = None,
        actions: list[str] | None = None,
        now: datetime | None = None,
    ) -> Alert:
        """
        Resolve an alert. Resolution is terminal.

        Raises:
            NotFound: unknown alert
            InvalidStateTransition: alert already resolved
        """
        now = now or self._clock()
        alert = self._lookup_open(alert_id, "resolve")
        if resolution_type not in ("manual", "auto", "timeout", "escalation_resolved"):
            raise ConfigurationInvalid(f"Unknown resolution type '{resolution_type}'", alert_id=alert_id)
        self._resolve(alert, actor, resolution_type, comment, root_cause, actions or [], now)
        await self._persist_alert(alert)
        return alert

    def _resolve(self, alert, actor, resolution_type, comment, root_cause, actions, now) -> None:
        alert.status = "resolved"
        alert.resolved_at = now
        alert.resolution = Resolution(
            actor=actor,
            at=now,
            resolution_type=resolution_type,
            comment=comment,
            root_cause=root_cause,
            actions_taken=actions,
        )
        alert.record(now, "resolved", actor=actor, detail=comment or resolution_type)
        del self._active[alert.id]
        self._history.append(alert)
        self.limiter.resolved(alert.dedup_key, alert.id, now)
        self._resolved_count += 1
        self._resolution_minutes_total += (now - alert.created_at).total_seconds() / 60
        logger.info(f"Alert {alert.id} resolved by {actor} ({resolution_type})")

    # ------------------------------------------------------------------
    # Time-driven transitions
    # ------------------------------------------------------------------

    async def process_timers(self, now: datetime | None = None) -> dict[str, int]:
        """
        Apply due escalations and auto-resolutions.

        Returns:
            Counts of escalations and resolutions applied
        """
        now = now or self._clock()
        escalated = resolved = 0
        for alert in list(self._active.values()):
            config = self._configurations.get(alert.configuration_id)
            if config is None:
                continue
            changed = False
            for action in escalation.plan(alert, config.escalation, now):
                if isinstance(action, escalation.AutoResolve):
                    self._resolve(alert, "system", "timeout", action.reason, None, [], now)
                    resolved += 1
                    changed = True
                    break
                stage = action.stage
                if alert.escalation_stage == 0:
                    self._escalated_count += 1
                alert.escalation_stage = action.stage_number
                alert.last_escalated_at = now
                if alert.status != "acknowledged":
                    alert.status = "escalating"
                alert.record(now, "escalated", detail=f"stage {action.stage_number}")
                escalated += 1
                changed = True
                channels = [config.channel(cid) for cid in stage.channels] if stage.channels else config.channels
                logger.warning(f"Alert {alert.id} escalated to stage {action.stage_number}")
                self._notify(
                    alert,
                    [c for c in channels if c is not None],
                    stage=action.stage_number,
                    roles=stage.notify_roles,
                    users=stage.notify_users,
                )
            if changed:
                self._spawn(self._persist_alert(alert))

        self._prune_history(now)
        return {"escalated": escalated, "resolved": resolved}

    def _prune_history(self, now: datetime) -> None:
        cutoff = now - timedelta(days=self.settings.history_retention_days)
        while self._history and self._history[0].resolved_at and self._history[0].resolved_at < cutoff:
            self._history.popleft()

    async def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run())
            logger.info("Alert escalation loop started")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.drain()

    async def _run(self) -> None:
        while True:
            try:
                await self.process_timers()
            except Exception as e:
                logger.error(f"Escalation pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.settings.escalation_check_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._active.get(alert_id) or next((a for a in self._history if a.id == alert_id), None)
        if alert is None:
            raise NotFound("alert", alert_id)
        return alert

    def get_active_alerts(self, filters: AlertQuery | dict | None = None) -> list[Alert]:
        query = _as_query(filters)
        found = sorted((a for a in self._active.values() if query.matches(a)), key=lambda a: a.created_at, reverse=True)
        return found[:query.limit] if query.limit else found

    def get_alert_history(self, filters: AlertQuery | dict | None = None) -> list[Alert]:
        query = _as_query(filters)
        alerts = list(self._active.values()) + list(self._history)
        found = sorted((a for a in alerts if query.matches(a)), key=lambda a: a.created_at, reverse=True)
        return found[:query.limit] if query.limit else found

    def get_metrics(self) -> dict[str, Any]:
        total = self._created
        return {
            "active_alerts": len(self._active),
            "total_alerts": total,
            "alerts_by_type": dict(self._by_type),
            "alerts_by_severity": dict(self._by_severity),
            "average_resolution_minutes": (
                self._resolution_minutes_total / self._resolved_count if self._resolved_count else 0.0
            ),
            "escalation_rate": self._escalated_count / total * 100 if total else 0.0,
            "acknowledged_rate": self._acknowledged_count / total * 100 if total else 0.0,
            "suppressed": dict(self.limiter.suppressed),
            "suppressed_total": sum(self.limiter.suppressed.values()),
            "coalesced": self.limiter.coalesced,
            "notifications_sent": self._notifications_sent,
            "delivery_failures": self._delivery_failures,
            "configurations": len(self._configurations),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore configurations and open alerts from the store."""
        if self.store is None:
            return
        try:
            configs = await self.store.list(ALERT_CONFIGURATIONS)
            alerts = await self.store.list(ALERTS)
        except StoreUnavailable as e:
            logger.warning(f"Could not restore alert state: {e}")
            return

        restored = {}
        for doc in configs:
            try:
                config = AlertConfiguration(**doc)
            except ValidationError as e:
                logger.error(f"Skipping stored alert configuration {doc.get('id')}: {e}")
                continue
            restored[config.id] = config
        with self._config_lock:
            self._configurations = {**restored, **self._configurations}

        for doc in sorted(alerts, key=lambda d: d.get("created_at", "")):
            try:
                alert = Alert(**doc)
            except ValidationError as e:
                logger.error(f"Skipping stored alert {doc.get('id')}: {e}")
                continue
            if alert.status == "resolved":
                self._history.append(alert)
            else:
                self._active[alert.id] = alert
                self.limiter.restore(alert.dedup_key, alert.id, alert.created_at)
        logger.info(f"Restored {len(restored)} alert configurations and {len(self._active)} open alerts")

    async def _persist_alert(self, alert: Alert) -> None:
        await self._persist(ALERTS, alert.id, alert.model_dump(mode="json"))

    async def _persist(self, collection: str, key: str, document: dict) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(collection, key, document)
        except StoreUnavailable as e:
            logger.warning(f"Record store unavailable, {collection}/{key} kept in memory only: {e}")


def _as_query(filters: AlertQuery | dict | None) -> AlertQuery:
    if filters is None:
        return AlertQuery()
    if isinstance(filters, AlertQuery):
        return filters
    return AlertQuery(**{k: v for k, v in filters.items() if v is not None})
