"""
Celery configuration for the pay stub pipeline.

Loaded by `celery_app.config_from_object("celeryconfig")` in paystub/tasks/__init__.py.
Broker, queue names and sweep intervals come from `paystub.core.config.settings`.
"""

from paystub.core.config import settings

# ═══════════════════════════════════════════════════════════
#  Broker & Result Backend
# ═══════════════════════════════════════════════════════════

broker_url = settings.CELERY_BROKER_URL
result_backend = settings.CELERY_RESULT_BACKEND

# ═══════════════════════════════════════════════════════════
#  Serialization: JSON only
# ═══════════════════════════════════════════════════════════

task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# ═══════════════════════════════════════════════════════════
#  Timezone
# ═══════════════════════════════════════════════════════════

timezone = "UTC"
enable_utc = True

# ═══════════════════════════════════════════════════════════
#  Task Execution
# ═══════════════════════════════════════════════════════════

# Acknowledge tasks AFTER they complete so a worker crash re-delivers them
task_acks_late = True
task_reject_on_worker_lost = True

# One task at a time per worker process; uploads can hold an LOS session for minutes
worker_prefetch_multiplier = 1

task_soft_time_limit = 900    # 15 min: raises SoftTimeLimitExceeded
task_time_limit = 960         # 16 min: hard kill

# ═══════════════════════════════════════════════════════════
#  Retry Policy (task-level; record-level retries are scheduled separately)
# ═══════════════════════════════════════════════════════════

task_default_retry_delay = 60
task_max_retries = 3

# ═══════════════════════════════════════════════════════════
#  Result Expiry: auto-clean after 24h
# ═══════════════════════════════════════════════════════════

result_expires = 86400

# ═══════════════════════════════════════════════════════════
#  Worker Settings
# ═══════════════════════════════════════════════════════════

worker_max_tasks_per_child = 500

worker_send_task_events = False
task_send_sent_event = False

# ═══════════════════════════════════════════════════════════
#  Task Routes (defaults; routing rules may name other queues per send)
# ═══════════════════════════════════════════════════════════
# Run dedicated workers per queue:
#   celery -A paystub.tasks worker -Q pay_stub_collect,pay_stub_batch
#   celery -A paystub.tasks worker -Q los_upload
#   celery -A paystub.tasks worker -Q maintenance
#   celery -A paystub.tasks beat

task_routes = {
    "paystub.tasks.pipeline_tasks.run_pipeline": {"queue": settings.COLLECT_QUEUE},
    "paystub.tasks.pipeline_tasks.execute_upload": {"queue": settings.UPLOAD_QUEUE},
    "paystub.tasks.pipeline_tasks.process_batch": {"queue": settings.BATCH_QUEUE},
    "paystub.tasks.maintenance_tasks.*": {"queue": "maintenance"},
}

task_default_queue = "default"

# ═══════════════════════════════════════════════════════════
#  Beat Schedule (periodic tasks)
# ═══════════════════════════════════════════════════════════

beat_schedule = {
    "sweep-stuck-uploads": {
        "task": "paystub.tasks.maintenance_tasks.sweep_stuck_uploads",
        "schedule": settings.STUCK_SWEEP_INTERVAL_SEC,
    },
    "retry-due-uploads": {
        "task": "paystub.tasks.maintenance_tasks.retry_due_uploads",
        "schedule": settings.RETRY_SWEEP_INTERVAL_SEC,
    },
}
