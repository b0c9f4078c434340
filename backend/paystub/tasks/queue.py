"""
Task queue seam.

Services enqueue follow-up work through ``TaskQueue`` so they never
import task functions (and tests can record what was enqueued).  Tasks
are sent by name; the target id is the only argument.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from celery import Celery

from paystub.core.logging import get_logger

logger = get_logger(__name__)


class TaskQueue(Protocol):
    def enqueue(
        self,
        task_name: str,
        target_id: int,
        *,
        queue: str | None = None,
        eta: datetime | None = None,
    ) -> None: ...


class CeleryTaskQueue:
    """TaskQueue backed by ``Celery.send_task``."""

    def __init__(self, app: Celery | None = None) -> None:
        if app is None:
            from paystub.tasks import celery_app as app
        self.app = app

    def enqueue(
        self,
        task_name: str,
        target_id: int,
        *,
        queue: str | None = None,
        eta: datetime | None = None,
    ) -> None:
        options = {}
        if queue:
            options["queue"] = queue
        if eta is not None:
            options["eta"] = eta
        result = self.app.send_task(str(task_name), args=[target_id], **options)
        logger.debug("Task enqueued", task=str(task_name), target_id=target_id, task_id=result.id, **options)
