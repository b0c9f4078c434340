"""
Celery tasks — pipeline runs and batch fan-out.

Each task receives a single id.  Unexpected exceptions are retried by
Celery with exponential backoff; pipeline-level failures are handled
inside the engine and never reach this layer.
"""

import structlog

from paystub.pipeline.engine import PipelineResult
from paystub.pipeline.phases import phases_from
from paystub.tasks import celery_app
from paystub.tasks.runtime import Services, run_async

logger = structlog.get_logger("tasks.pipeline")

_RETRY_OPTIONS = dict(
    bind=True,
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)


def _summary(result: PipelineResult) -> dict:
    return {
        "execution_id": result.execution_id,
        "work_record_id": result.work_record_id,
        "status": result.status,
        "final_state": result.final_state,
        "steps_completed": result.steps_completed,
        "total_steps": result.total_steps,
        "duration_ms": result.total_duration_ms,
    }


@celery_app.task(name="paystub.tasks.pipeline_tasks.run_pipeline", **_RETRY_OPTIONS)
def run_pipeline(self, work_record_id: int):
    """Run every applicable phase for one work record."""
    task_log = logger.bind(task_id=self.request.id, work_record_id=work_record_id)
    task_log.info("Pipeline task started", retries=self.request.retries)

    async def _run(services: Services) -> PipelineResult:
        return await services.engine.run(work_record_id)

    result = run_async(_run)
    task_log.info("Pipeline task finished", status=result.status, final_state=result.final_state)
    return _summary(result)


@celery_app.task(name="paystub.tasks.pipeline_tasks.execute_upload", **_RETRY_OPTIONS)
def execute_upload(self, work_record_id: int):
    """Scheduled upload retry: resume the pipeline at ``execute``."""
    task_log = logger.bind(task_id=self.request.id, work_record_id=work_record_id)
    task_log.info("Upload task started", retries=self.request.retries)

    async def _run(services: Services) -> PipelineResult:
        return await services.engine.run(work_record_id, phases=phases_from(services.phases, "execute"))

    result = run_async(_run)
    task_log.info("Upload task finished", status=result.status, final_state=result.final_state)
    return _summary(result)


@celery_app.task(name="paystub.tasks.pipeline_tasks.process_batch", **_RETRY_OPTIONS)
def process_batch(self, job_id: int):
    """Enqueue a pipeline run for every triggered record of a batch Job."""
    task_log = logger.bind(task_id=self.request.id, job_id=job_id)
    task_log.info("Batch task started", retries=self.request.retries)

    async def _run(services: Services):
        return await services.dispatcher.process_batch(job_id)

    stats = run_async(_run)
    task_log.info("Batch task finished", **stats.as_dict())
    return stats.as_dict()
