"""
Celery application factory.
"""

from celery import Celery

celery_app = Celery("paystub")
celery_app.config_from_object("celeryconfig")

# Auto-discover tasks in these modules
celery_app.autodiscover_tasks([
    "paystub.tasks.pipeline_tasks",
    "paystub.tasks.maintenance_tasks",
])
