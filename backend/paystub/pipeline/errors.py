"""
Domain-specific exception hierarchy and failure classification.

All pipeline exceptions inherit from PipelineError so callers can
catch broadly or narrowly as needed.  Each exception carries structured
context (work record, phase, details) for logging/debugging and a
stable ``code`` that ends up on WorkRecords, UploadAttempts and
escalation contexts.

Decisions are never made on exception types directly: ``classify()``
turns any exception into a ``Failure`` and callers ``match`` on its
``kind``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from paystub.core.constants import ErrorKind


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code: str = "pipeline_error"
    kind: ErrorKind = ErrorKind.RETRYABLE

    def __init__(
        self,
        message: str,
        *,
        work_record_id: int | None = None,
        phase: str | None = None,
        details: dict | None = None,
        code: str | None = None,
    ) -> None:
        self.work_record_id = work_record_id
        self.phase = phase
        self.details = details or {}
        if code is not None:
            self.code = code
        super().__init__(message)


# ─── Retryable ─────────────────────────────────────────────

class RetryableError(PipelineError):
    """Transient condition; the same work may succeed later."""

    kind = ErrorKind.RETRYABLE


class RemoteTimeoutError(RetryableError):
    """The LOS did not answer in time."""

    code = "timeout"


class RemoteAuthenticationError(RetryableError):
    """The LOS rejected our credentials or session."""

    code = "authentication_error"


class RemoteSystemError(RetryableError):
    """The LOS answered with a server-side failure."""

    code = "system_error"


class StorageFetchError(RetryableError):
    """Document bytes could not be read from secure storage."""

    code = "storage_error"


class DeliveryError(RetryableError):
    """A message to the applicant could not be handed to its channel."""

    code = "delivery_error"


# ─── Non-retryable ─────────────────────────────────────────

class NonRetryableError(PipelineError):
    """Retrying cannot help; a human has to look at it."""

    kind = ErrorKind.NON_RETRYABLE


class DocumentFormatError(NonRetryableError):
    """Document missing, malformed, or failing its integrity checks."""

    code = "document_format_error"


class DocumentNotReceivedError(NonRetryableError):
    code = "document_not_received"


class ValidationError(NonRetryableError):
    """Invalid input or an operation not allowed in the current state."""

    code = "validation_error"


class ConfigurationError(NonRetryableError):
    """Routing or policy configuration is missing or unusable."""

    code = "configuration_error"


# ═══════════════════════════════════════════════════════════
#  Failure: tagged classification result
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Failure:
    """Classified error, the only thing retry/escalation logic looks at."""

    kind: ErrorKind
    code: str
    message: str
    error_class: str

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "error_class": self.error_class,
            "retryable": self.retryable,
        }


def classify(exc: BaseException) -> Failure:
    """Classify any exception; unknown errors are retryable ``unexpected_error``."""
    match exc:
        case PipelineError():
            return Failure(
                kind=exc.kind,
                code=exc.code,
                message=str(exc),
                error_class=type(exc).__name__,
            )
        case _:
            return Failure(
                kind=ErrorKind.RETRYABLE,
                code="unexpected_error",
                message=str(exc) or type(exc).__name__,
                error_class=type(exc).__name__,
            )
