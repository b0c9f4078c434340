"""
Pipeline — per-record phase state machine for pay stub collection.

Modules:
    errors    — exception hierarchy and ``classify()`` → ``Failure``
    context   — PipelineContext / StepResult
    step      — PipelineStep base class
    phases    — the eight ordered phases
    engine    — PipelineEngine: runs phases, commits between them
    executor  — UploadExecutor: one transfer attempt into the LOS
    transfer  — TransferClient / DocumentSource interfaces + httpx clients
    retry     — RetryPolicyConfig, backoff, RetryScheduler

Import from the submodules directly; this package stays import-free
so the escalation and dispatch packages can depend on ``errors``.
"""
