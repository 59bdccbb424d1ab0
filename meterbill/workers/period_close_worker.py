from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from meterbill.core.config import get_settings
from meterbill.core.logging import configure_logging
from meterbill.persistence.db import Database
from meterbill.services.billing.period_close import PeriodCloseService

logger = logging.getLogger(__name__)


async def run_period_close(ctx, as_of: str | None = None) -> dict[str, Any]:
    # Cron and on-demand entry point; overlapping runs are safe because claims arbitrate.
    service: PeriodCloseService = ctx["period_close_service"]
    result = await service.run_period_close(as_of=datetime.fromisoformat(as_of) if as_of else None)
    if result.failed:
        logger.warning("period_close_run_failures run_id=%s failed=%s", result.run_id, result.failed)
    return result.to_dict()


async def _startup(ctx) -> None:
    # Build one engine per worker process and share it across jobs.
    configure_logging()
    settings = get_settings()
    database = Database.from_settings(settings)
    ctx["database"] = database
    ctx["period_close_service"] = PeriodCloseService(database, settings=settings)


async def _shutdown(ctx) -> None:
    # Dispose pooled connections so restarts do not leak server-side sessions.
    database = ctx.get("database")
    if database is not None:
        await database.dispose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.period_close_queue_name
    poll_delay = max(1, int(settings.period_close_poll_interval_s))
    max_tries = 3
    functions = [run_period_close]
    cron_jobs = [
        cron(run_period_close, hour={settings.period_close_cron_hour}, minute={0}, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
