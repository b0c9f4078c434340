"""Shared constants and enums used across the application."""

from enum import StrEnum


PAY_STUB_DOCUMENT_TYPE = "PAY_STUB"


class UserRole(StrEnum):
    """Organization user roles."""

    LENDING_OFFICER = "lending_officer"
    LOAN_MANAGER = "loan_manager"
    OPERATIONS_MANAGER = "operations_manager"
    AUTOMATION = "automation"


# Roles notified when automation gives up on a record
ESCALATION_ROLES = (
    UserRole.LENDING_OFFICER,
    UserRole.LOAN_MANAGER,
    UserRole.OPERATIONS_MANAGER,
)


class UserStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LoanStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class JobStatus(StrEnum):
    """Status of an aggregate trigger instance."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecordState(StrEnum):
    """Per-record pipeline state."""

    TRIGGERED = "triggered"
    PROCESSING = "processing"
    QUEUED = "queued"
    COLLECTING = "collecting"
    COLLECTED = "collected"
    UPLOADING = "uploading"
    RETRY_SCHEDULED = "retry_scheduled"
    UPLOADED = "uploaded"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


# States a record cannot leave through automation
TERMINAL_STATES = frozenset({
    RecordState.COMPLETED,
    RecordState.ESCALATED,
    RecordState.CANCELLED,
})

# States cancellation is allowed to touch
CANCELLABLE_STATES = (RecordState.TRIGGERED, RecordState.QUEUED)


class DocumentStatus(StrEnum):
    REQUESTED = "requested"
    COLLECTION_SENT = "collection_sent"
    RECEIVED = "received"
    VERIFIED = "verified"
    UPLOADED = "uploaded"


# Statuses from which a document can be transferred to the LOS
TRANSFERABLE_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.RECEIVED,
    DocumentStatus.VERIFIED,
})


class UploadStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationChannel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    TEAM_CHAT = "team_chat"


class NotificationStatus(StrEnum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class NotificationType(StrEnum):
    SUCCESS = "success"
    UPLOAD_FAILURE = "upload_failure"


class Severity(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorKind(StrEnum):
    """Retryability of a classified failure."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


class EscalationReason(StrEnum):
    """Why a record was handed to a human."""

    MONITOR_EXHAUSTED = "monitor_exhausted"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NON_RETRYABLE = "non_retryable"
    STUCK_UPLOAD = "stuck_upload"
    MISSING_ROUTING_RULE = "missing_routing_rule"


class TriggerSource(StrEnum):
    LOAN_APPROVAL = "loan_approval"
    BATCH_APPROVAL = "batch_approval"


class TaskName(StrEnum):
    """Celery task names used when enqueuing work."""

    RUN_PIPELINE = "paystub.tasks.pipeline_tasks.run_pipeline"
    EXECUTE_UPLOAD = "paystub.tasks.pipeline_tasks.execute_upload"
    PROCESS_BATCH = "paystub.tasks.pipeline_tasks.process_batch"


class StepStatus(StrEnum):
    """Outcome of one phase within a run."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineStatus(StrEnum):
    """Outcome of one pipeline run over a work record."""

    COMPLETED = "completed"     # record reached `completed`
    SUSPENDED = "suspended"     # handed to a later task (retry scheduled)
    ESCALATED = "escalated"
    NOOP = "noop"               # no phase applied to the record's state
    STOPPED = "stopped"         # phases ran but the record is not final
