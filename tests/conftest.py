from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from fakes import ARTIFACT, InMemoryBroker, ScriptedWork
from reportq.config.settings import Settings
from reportq.infra.database import Database
from reportq.main import create_app
from reportq.v1.jobs import registry_init  # noqa: F401
from reportq.v1.jobs.service import JobService
from reportq.v1.jobs.store import SqlStatusStore
from reportq.v1.jobs.worker import JobProcessor


@pytest.fixture
def settings() -> Settings:
    """Settings for an in-memory database and instant simulated work."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        max_retries=3,
        job_work_timeout_s=5,
        report_min_delay_ms=0,
        report_max_delay_ms=0,
        report_failure_rate=0.0,
        rabbitmq_connect_delay_s=0.01,
        rabbitmq_max_connect_delay_s=0.05,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Fresh in-memory database with the schema created."""
    database = Database(settings)
    await database.create_schema()
    yield database
    await database.close()


@pytest.fixture
def store(database) -> SqlStatusStore:
    return SqlStatusStore(database)


@pytest.fixture
async def broker() -> InMemoryBroker:
    broker = InMemoryBroker()
    await broker.declare_topology()
    return broker


@pytest.fixture
def service(settings, store, broker) -> JobService:
    return JobService(settings, store, broker)


@pytest.fixture
def work() -> ScriptedWork:
    """Work function that always succeeds."""
    return ScriptedWork(ARTIFACT)


@pytest.fixture
def processor(settings, store, broker, work) -> JobProcessor:
    return JobProcessor(settings, store, broker, work=work)


@pytest.fixture
def app(settings, database, broker, service):
    """FastAPI app wired to the in-memory database and broker."""
    app = create_app(settings)
    app.state.database = database
    app.state.broker = broker
    app.state.job_service = service
    return app


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
