"""
Celery beat tasks — periodic sweeps.
"""

import structlog

from paystub.tasks import celery_app
from paystub.tasks.runtime import Services, run_async

logger = structlog.get_logger("tasks.maintenance")


@celery_app.task(name="paystub.tasks.maintenance_tasks.sweep_stuck_uploads")
def sweep_stuck_uploads():
    """Fail and escalate uploads stuck in progress past the threshold."""

    async def _run(services: Services) -> int:
        return await services.stuck.escalate_stuck()

    handled = run_async(_run)
    logger.info("Stuck upload sweep finished", handled=handled)
    return handled


@celery_app.task(name="paystub.tasks.maintenance_tasks.retry_due_uploads")
def retry_due_uploads():
    """Re-enqueue uploads whose scheduled retry time has passed."""

    async def _run(services: Services) -> int:
        return await services.scheduler.retry_due_uploads()

    requeued = run_async(_run)
    logger.info("Retry sweep task finished", requeued=requeued)
    return requeued
