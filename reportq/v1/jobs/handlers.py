"""
Job-type plug-ins: ingestion payload validators and work handlers.

Validators implement the PayloadValidator protocol, work handlers implement
the WorkHandler protocol; both are registered in registry_init.
"""

import asyncio
import random
from typing import Any

from reportq.config.logging import get_logger
from reportq.config.settings import Settings
from reportq.v1.core.exceptions import TransientError, ValidationError
from reportq.v1.jobs.models import Job

logger = get_logger(__name__)


class SalesSummaryValidator:
    """sales_summary reports need a date range."""

    def validate(self, payload: dict[str, Any]) -> None:
        missing = [key for key in ("startDate", "endDate") if not payload.get(key)]
        if missing:
            raise ValidationError(
                f"sales_summary payload requires {' and '.join(missing)}",
                details={"field": "payload", "missing": missing},
            )


class UserActivityValidator:
    """user_activity reports need a user or a start date."""

    def validate(self, payload: dict[str, Any]) -> None:
        if not (payload.get("userId") or payload.get("startDate")):
            raise ValidationError(
                "user_activity payload requires userId or startDate",
                details={"field": "payload", "missing": ["userId", "startDate"]},
            )


class ReportGenerator:
    """
    Simulated report generation.

    Sleeps for a random time in the report_* delay range, then fails with a
    TransientError at report_failure_rate or returns the report URL.
    """

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    async def __call__(self, job: Job, settings: Settings) -> str:
        delay_ms = self.rng.randint(settings.report_min_delay_ms, settings.report_max_delay_ms)
        logger.info(
            "Generating report",
            job_id=str(job.id),
            job_type=job.job_type,
            estimated_ms=delay_ms,
        )

        await asyncio.sleep(delay_ms / 1000)

        if self.rng.random() < settings.report_failure_rate:
            raise TransientError("Simulated transient processing error")

        return f"{settings.report_base_url.rstrip('/')}/{job.id}.pdf"
