"""ARQ worker entrypoint."""

from arq import cron

from agentdesk.services.reconciliation import redis_settings
from agentdesk.workers.finalize import retry_finalize_turn
from agentdesk.workers.usage_reset import reset_monthly_usage_job


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from agentdesk.core.database import init_db
    await init_db()


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [retry_finalize_turn]
    cron_jobs = [cron(reset_monthly_usage_job, hour=0, minute=5)]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings()
    max_jobs = 10
    max_tries = 8
    job_timeout = 60


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
