import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from fastapi import Body, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pipewatch.adapters.channels.chat import ChatChannel
from pipewatch.adapters.channels.inapp import InAppChannel
from pipewatch.adapters.channels.kafka import KafkaPublisher
from pipewatch.adapters.channels.webhook import WebhookChannel
from pipewatch.adapters.config.settings_loader import load_settings
from pipewatch.adapters.config.yaml_store import YamlDefinitionStore
from pipewatch.adapters.extractors.memory import InMemoryExtractor
from pipewatch.adapters.extractors.prometheus import PrometheusExtractor
from pipewatch.adapters.store.memory_store import InMemoryRecordStore
from pipewatch.adapters.store.mongo_store import MongoRecordStore
from pipewatch.core.domain.alert import AlertQuery, AlertSeverity, AlertStatus, AlertType
from pipewatch.core.domain.errors import (
    ConcurrencyExceeded,
    ConfigurationInvalid,
    InsufficientData,
    InvalidStateTransition,
    NotFound,
)
from pipewatch.core.domain.result import to_dict
from pipewatch.core.domain.series import DataPoint
from pipewatch.core.domain.settings import SystemSettings
from pipewatch.core.ports.data_extractor import DataExtractor
from pipewatch.core.ports.record_store import RecordStore
from pipewatch.core.services.alert_engine import AlertEngine
from pipewatch.core.services.analysis_loop import AnalysisLoop
from pipewatch.core.services.analytics import AnalyticsEngine
from pipewatch.core.services.dispatcher import ChannelDispatcher
from pipewatch.core.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@dataclass
class Services:
    """Explicitly wired service graph; one per application."""

    settings: SystemSettings
    store: RecordStore
    extractor: DataExtractor
    engine: AnalyticsEngine
    dispatcher: ChannelDispatcher
    alerts: AlertEngine
    scheduler: JobScheduler
    executor: ThreadPoolExecutor | None = None

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.alerts.stop()
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
        await self.extractor.close()
        for transport in self.dispatcher.transports.values():
            await transport.close()
        if isinstance(self.store, MongoRecordStore):
            self.store.close()


def build_services(settings: SystemSettings) -> Services:
    store = MongoRecordStore(settings) if settings.store_type == "mongo" else InMemoryRecordStore()

    if settings.prometheus_url:
        extractor = PrometheusExtractor(base_url=settings.prometheus_url, timeout=settings.prometheus_timeout)
    else:
        logger.warning("No prometheus_url configured; analysing in-memory run records only")
        extractor = InMemoryExtractor()

    publisher = KafkaPublisher(settings.kafka_bootstrap_servers) if settings.kafka_bootstrap_servers else None
    dispatcher = ChannelDispatcher({
        "webhook": WebhookChannel(),
        "chat": ChatChannel(),
        "inapp": InAppChannel(publisher=publisher, topic=settings.kafka_topic),
    })

    engine = AnalyticsEngine(settings.analytics)
    alerts = AlertEngine(dispatcher, store=store, settings=settings.alerting)
    executor = ThreadPoolExecutor(
        max_workers=settings.scheduler.worker_threads,
        thread_name_prefix="pipewatch-analytics",
    )
    runner = AnalysisLoop(
        extractor,
        engine,
        alerts=alerts,
        executor=executor,
        extract_timeout=settings.scheduler.extract_timeout_seconds,
    )
    scheduler = JobScheduler(runner, settings=settings.scheduler, store=store)
    return Services(
        settings=settings,
        store=store,
        extractor=extractor,
        engine=engine,
        dispatcher=dispatcher,
        alerts=alerts,
        scheduler=scheduler,
        executor=executor,
    )


# --- Request bodies ---

class AcknowledgeRequest(BaseModel):
    actor: str
    comment: str | None = None


class ResolveRequest(BaseModel):
    actor: str
    resolution_type: Literal["manual", "auto", "timeout", "escalation_resolved"] = "manual"
    comment: str | None = None
    root_cause: str | None = None
    actions: list[str] = Field(default_factory=list)


class TriggerRequest(BaseModel):
    type: Literal["anomaly", "trend", "sla", "cost", "custom"]
    details: dict[str, Any]
    context: dict[str, Any] = Field(default_factory=dict)


class PointIn(BaseModel):
    timestamp: datetime
    value: float


class SeriesRequest(BaseModel):
    points: list[PointIn]
    method: Literal["zscore", "percentile", "iqr", "all"] = "all"

    def series(self) -> list[DataPoint]:
        return [DataPoint(timestamp=p.timestamp, value=p.value) for p in sorted(self.points, key=lambda p: p.timestamp)]


class BenchmarkRequest(BaseModel):
    current_value: float
    history: list[float]
    category: str | None = None
    lower_is_better: bool = False


class SLARequest(BaseModel):
    current_value: float
    target: float
    history: list[float] = Field(default_factory=list)
    violation_type: str = "availability"
    direction: Literal["minimum", "maximum"]


class CostRequest(BaseModel):
    execution_minutes: float
    resource_usage: dict[str, float]
    historical_cost: list[float] = Field(default_factory=list)


def create_app(
    settings: SystemSettings | None = None,
    services: Services | None = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the HTTP surface. Services are constructed in the lifespan unless
    passed in (tests pass their own).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = app.state.services
        if svc is None:
            cfg = settings or load_settings()
            logging.basicConfig(level=cfg.log_level)
            svc = app.state.services = build_services(cfg)
            await svc.alerts.load()
            await svc.scheduler.load()
            counts = await YamlDefinitionStore(cfg.definitions_file).apply(svc.scheduler, svc.alerts)
            logger.info(f"Loaded definitions: {counts}")
        if start_background:
            await svc.scheduler.start()
            await svc.alerts.start()
        try:
            yield
        finally:
            await svc.close()

    app = FastAPI(title="pipewatch", version=VERSION, lifespan=lifespan)
    app.state.services = services

    def svc() -> Services:
        return app.state.services

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationInvalid)
    async def invalid(request: Request, exc: ConfigurationInvalid):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    async def conflict(request: Request, exc: InvalidStateTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConcurrencyExceeded)
    async def busy(request: Request, exc: ConcurrencyExceeded):
        return JSONResponse(status_code=429, content={"detail": str(exc)})

    @app.exception_handler(InsufficientData)
    async def insufficient(request: Request, exc: InsufficientData):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    def health_check():
        return {"status": "ok", "version": VERSION}

    # --- Jobs ---

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(definition: dict[str, Any] = Body(...)):
        job = await svc().scheduler.create_job(definition)
        return job.model_dump(mode="json")

    @app.get("/jobs")
    def list_jobs():
        return [j.model_dump(mode="json") for j in svc().scheduler.list_jobs()]

    @app.get("/jobs/metrics")
    def scheduler_metrics():
        return svc().scheduler.get_metrics()

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str):
        return svc().scheduler.get_job_status(job_id)

    @app.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_job(job_id: str):
        await svc().scheduler.delete_job(job_id)

    @app.post("/jobs/{job_id}/enable")
    async def enable_job(job_id: str):
        return (await svc().scheduler.enable_job(job_id)).model_dump(mode="json")

    @app.post("/jobs/{job_id}/disable")
    async def disable_job(job_id: str):
        return (await svc().scheduler.disable_job(job_id)).model_dump(mode="json")

    @app.post("/jobs/{job_id}/trigger", status_code=status.HTTP_202_ACCEPTED)
    async def trigger_job(job_id: str):
        queued = svc().scheduler.submit(job_id, reason="manual")
        return {"job_id": job_id, "queued": queued}

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str):
        return {"job_id": job_id, "cancelled": svc().scheduler.cancel_job(job_id)}

    @app.get("/jobs/{job_id}/executions")
    def job_executions(job_id: str, limit: int | None = None):
        return [e.model_dump(mode="json") for e in svc().scheduler.get_execution_history(job_id, limit)]

    # --- Alerts ---

    @app.post("/alerts/configurations", status_code=status.HTTP_201_CREATED)
    async def create_configuration(configuration: dict[str, Any] = Body(...)):
        config = await svc().alerts.create_configuration(configuration)
        return config.model_dump(mode="json")

    @app.get("/alerts/configurations")
    def list_configurations():
        return [c.model_dump(mode="json") for c in svc().alerts.list_configurations()]

    @app.get("/alerts/configurations/{configuration_id}")
    def get_configuration(configuration_id: str):
        return svc().alerts.get_configuration(configuration_id).model_dump(mode="json")

    @app.patch("/alerts/configurations/{configuration_id}")
    async def update_configuration(configuration_id: str, changes: dict[str, Any] = Body(...)):
        config = await svc().alerts.update_configuration(configuration_id, changes)
        return config.model_dump(mode="json")

    @app.delete("/alerts/configurations/{configuration_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_configuration(configuration_id: str):
        await svc().alerts.delete_configuration(configuration_id)

    @app.post("/alerts/trigger")
    async def trigger_alert(request: TriggerRequest):
        alert_id = await svc().alerts.trigger_alert(request.type, request.details, request.context)
        return {"alert_id": alert_id}

    @app.get("/alerts/active")
    def active_alerts(
        type: AlertType | None = None,
        severity: AlertSeverity | None = None,
        pipeline_id: str | None = None,
        configuration_id: str | None = None,
        limit: int | None = Query(default=None, ge=1),
    ):
        query = AlertQuery(type=type, severity=severity, pipeline_id=pipeline_id,
                           configuration_id=configuration_id, limit=limit)
        return [a.model_dump(mode="json") for a in svc().alerts.get_active_alerts(query)]

    @app.get("/alerts/history")
    def alert_history(
        type: AlertType | None = None,
        severity: AlertSeverity | None = None,
        status: AlertStatus | None = None,
        pipeline_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = Query(default=None, ge=1),
    ):
        query = AlertQuery(type=type, severity=severity, status=status, pipeline_id=pipeline_id,
                           since=since, until=until, limit=limit)
        return [a.model_dump(mode="json") for a in svc().alerts.get_alert_history(query)]

    @app.get("/alerts/metrics")
    def alert_metrics():
        return svc().alerts.get_metrics()

    @app.get("/alerts/{alert_id}")
    def get_alert(alert_id: str):
        return svc().alerts.get_alert(alert_id).model_dump(mode="json")

    @app.post("/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(alert_id: str, request: AcknowledgeRequest):
        alert = await svc().alerts.acknowledge_alert(alert_id, request.actor, request.comment)
        return alert.model_dump(mode="json")

    @app.post("/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str, request: ResolveRequest):
        alert = await svc().alerts.resolve_alert(
            alert_id,
            request.actor,
            resolution_type=request.resolution_type,
            comment=request.comment,
            root_cause=request.root_cause,
            actions=request.actions,
        )
        return alert.model_dump(mode="json")

    # --- Stateless analytics ---

    @app.post("/analytics/anomalies")
    def detect_anomalies(request: SeriesRequest):
        found = svc().engine.detect_anomalies(request.series(), request.method)
        return {"anomalies": [to_dict(a) for a in found]}

    @app.post("/analytics/trend")
    def analyze_trend(request: SeriesRequest):
        return to_dict(svc().engine.analyze_trend(request.series()))

    @app.post("/analytics/benchmark")
    def generate_benchmark(request: BenchmarkRequest):
        return to_dict(svc().engine.generate_benchmark(
            request.current_value, request.history, request.category, request.lower_is_better,
        ))

    @app.post("/analytics/sla")
    def monitor_sla(request: SLARequest):
        return to_dict(svc().engine.monitor_sla(
            request.current_value, request.target, request.history, request.violation_type,
            direction=request.direction,
        ))

    @app.post("/analytics/cost")
    def analyze_costs(request: CostRequest):
        try:
            result = svc().engine.analyze_costs(
                request.execution_minutes, request.resource_usage, request.historical_cost,
            )
        except ValueError as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        return to_dict(result)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pipewatch.main:app", host="0.0.0.0", port=8000, log_level="info")
