"""Error taxonomy and classification."""

import pytest

from paystub.core.constants import ErrorKind
from paystub.pipeline.errors import (
    ConfigurationError,
    DeliveryError,
    DocumentFormatError,
    DocumentNotReceivedError,
    RemoteAuthenticationError,
    RemoteSystemError,
    RemoteTimeoutError,
    StorageFetchError,
    ValidationError,
    classify,
)


@pytest.mark.parametrize(
    "exc, kind, code",
    [
        (RemoteTimeoutError("slow"), ErrorKind.RETRYABLE, "timeout"),
        (RemoteAuthenticationError("denied"), ErrorKind.RETRYABLE, "authentication_error"),
        (RemoteSystemError("500"), ErrorKind.RETRYABLE, "system_error"),
        (StorageFetchError("gone"), ErrorKind.RETRYABLE, "storage_error"),
        (DeliveryError("bounced"), ErrorKind.RETRYABLE, "delivery_error"),
        (DocumentFormatError("bad pdf"), ErrorKind.NON_RETRYABLE, "document_format_error"),
        (DocumentNotReceivedError("nothing"), ErrorKind.NON_RETRYABLE, "document_not_received"),
        (ValidationError("bad input"), ErrorKind.NON_RETRYABLE, "validation_error"),
        (ConfigurationError("no rule"), ErrorKind.NON_RETRYABLE, "configuration_error"),
    ],
)
def test_pipeline_errors_classify_by_kind_and_code(exc, kind, code):
    failure = classify(exc)
    assert failure.kind == kind
    assert failure.code == code
    assert failure.error_class == type(exc).__name__
    assert failure.retryable is (kind == ErrorKind.RETRYABLE)


def test_unknown_exception_is_retryable_unexpected_error():
    failure = classify(KeyError("missing"))
    assert failure.kind == ErrorKind.RETRYABLE
    assert failure.code == "unexpected_error"
    assert failure.error_class == "KeyError"


def test_exception_without_message_uses_class_name():
    assert classify(RuntimeError()).message == "RuntimeError"


def test_code_override_keeps_kind():
    failure = classify(ConfigurationError("no routing", code="missing_routing_rule"))
    assert failure.code == "missing_routing_rule"
    assert failure.kind == ErrorKind.NON_RETRYABLE


def test_error_carries_structured_context():
    exc = DocumentFormatError("checksum", work_record_id=9, phase="execute", details={"expected": "ab"})
    assert exc.work_record_id == 9
    assert exc.phase == "execute"
    assert exc.details == {"expected": "ab"}


def test_failure_to_dict():
    assert classify(RemoteTimeoutError("slow")).to_dict() == {
        "code": "timeout",
        "message": "slow",
        "error_class": "RemoteTimeoutError",
        "retryable": True,
    }
