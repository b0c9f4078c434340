"""Escalation — hand-off of failed work records to humans."""

from paystub.escalation.context import EscalationContext, analyze_failures, mask_storage_url
from paystub.escalation.engine import EscalationEngine, EscalationResult

__all__ = [
    "EscalationContext",
    "EscalationEngine",
    "EscalationResult",
    "analyze_failures",
    "mask_storage_url",
]
