from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from reportq.config.logging import get_logger
from reportq.config.settings import Settings, SettingsDep
from reportq.infra.database import Database
from reportq.v1.core.exceptions import ReportQueueException, create_success_response
from reportq.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class BrokerHealth(BaseModel):
    """Broker health status."""

    connected: bool
    queue: str | None = None
    dlq: str | None = None


class JobsHealth(BaseModel):
    """Job counts as seen by the status store."""

    total_jobs: int = 0
    in_flight: int = 0
    by_status: dict[str, int] = {}


@router.get("/healthz", response_model=dict)
async def health_check(request: Request, settings: Settings = SettingsDep):
    """Health check endpoint with database, broker and job status."""

    timestamp = datetime.now(UTC).isoformat()
    state = request.app.state

    db_health = await _check_database_health(getattr(state, "database", None))
    broker_health = _check_broker_health(getattr(state, "broker", None))
    overall_ok = db_health.connected and broker_health.connected

    jobs_health = None
    service = getattr(state, "job_service", None)
    if service is not None and db_health.connected:
        jobs_health = await _check_jobs_health(service)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "broker": broker_health.model_dump(),
        "jobs": jobs_health.model_dump() if jobs_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(database: Database | None) -> DatabaseHealth:
    """Check database connectivity and response time."""
    if database is None:
        return DatabaseHealth(connected=False, error="Database not initialized")

    start_time = datetime.now(UTC)
    try:
        await database.ping()
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return DatabaseHealth(connected=False, error=str(e))

    response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))


def _check_broker_health(broker) -> BrokerHealth:
    if broker is None:
        return BrokerHealth(connected=False)
    return BrokerHealth(
        connected=bool(getattr(broker, "is_connected", False)),
        queue=broker.topology.queue,
        dlq=broker.topology.dlq_queue,
    )


async def _check_jobs_health(service: JobService) -> JobsHealth | None:
    try:
        stats = await service.get_job_stats()
    except ReportQueueException as e:
        # Job counts are informational and don't fail overall health
        logger.warning("Job stats unavailable for health check", error=e.message)
        return None
    return JobsHealth(
        total_jobs=stats.total_jobs, in_flight=stats.in_flight, by_status=stats.by_status
    )
