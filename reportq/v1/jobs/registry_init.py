"""
Job registry initialization.

Registers payload validators and work handlers with the global registries.
"""

from reportq.config.logging import get_logger
from reportq.v1.core.registries import (
    WorkHandlerRegistry,
    payload_validator_registry,
    work_handler_registry,
)
from reportq.v1.jobs.handlers import (
    ReportGenerator,
    SalesSummaryValidator,
    UserActivityValidator,
)

logger = get_logger(__name__)


def register_job_handlers() -> None:
    """Register all job-type plug-ins with the registries."""

    logger.info("Registering job handlers")

    # Ingestion-time payload checks
    payload_validator_registry.register("sales_summary", SalesSummaryValidator())
    payload_validator_registry.register("user_activity", UserActivityValidator())

    # Work for job types without a dedicated handler
    work_handler_registry.register(WorkHandlerRegistry.DEFAULT, ReportGenerator())

    logger.info(
        "Job handlers registered",
        validators=payload_validator_registry.list(),
        work_handlers=work_handler_registry.list(),
    )


# Auto-register handlers when module is imported
register_job_handlers()
