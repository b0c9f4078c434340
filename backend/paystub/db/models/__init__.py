"""
Models package — re-exports Base and all models.

Import models here so `Base.metadata.create_all` picks up every
table automatically.

When adding a new model:
    1. Create `paystub/db/models/<table_name>.py`
    2. Import it here
"""

from paystub.db.models.base import Base
from paystub.db.models.document import Document
from paystub.db.models.escalation import Escalation
from paystub.db.models.event import Event
from paystub.db.models.job import Job
from paystub.db.models.loan_application import LoanApplication
from paystub.db.models.notification import Notification
from paystub.db.models.organization import Organization
from paystub.db.models.retry_policy import RetryPolicy
from paystub.db.models.routing_rule import RoutingRule
from paystub.db.models.upload_attempt import UploadAttempt
from paystub.db.models.user import User
from paystub.db.models.work_record import WorkRecord

__all__ = [
    "Base",
    "Document",
    "Escalation",
    "Event",
    "Job",
    "LoanApplication",
    "Notification",
    "Organization",
    "RetryPolicy",
    "RoutingRule",
    "UploadAttempt",
    "User",
    "WorkRecord",
]
