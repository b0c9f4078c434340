"""Structured logging helpers: module loggers and the per-run trace id."""

from structlog.testing import capture_logs

from paystub.core.logging import bind_trace_id, clear_trace_id, current_trace_id, get_logger


def test_module_logger_logs_with_its_name():
    log = get_logger("paystub.example")

    with capture_logs() as logs:
        log.info("Upload attempt started", work_record_id=7)

    [entry] = logs
    assert entry["event"] == "Upload attempt started"
    assert entry["logger_name"] == "paystub.example"
    assert entry["work_record_id"] == 7
    assert entry["log_level"] == "info"


def test_bound_logger_keeps_module_name():
    with capture_logs() as logs:
        log = get_logger("paystub.example").bind(job_id=3)
        log.warning("Batch progress")

    assert logs[0]["logger_name"] == "paystub.example"
    assert logs[0]["job_id"] == 3


def test_trace_id_is_bound_for_the_run():
    trace_id = bind_trace_id()
    try:
        assert len(trace_id) == 20
        assert current_trace_id() == trace_id
    finally:
        clear_trace_id()

    assert current_trace_id() != trace_id
