"""Error types raised by the job engine, processors and clients.

Everything inherits from PostflowError so the scheduler tick can treat the
whole family uniformly. The retry primitive gives up immediately on
ValidationError and TerminalAutomationError; everything else is retried
according to the step's policy.
"""


class PostflowError(Exception):
    pass


class ValidationError(PostflowError):
    """Bad input rejected before a job is created."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class AutomationError(PostflowError):
    """A collaborator call (browser, partner API, LLM) failed."""

    def __init__(self, message: str, code: str | None = None, details: object = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details


class TransientAutomationError(AutomationError):
    """Timeouts, network failures, captcha mismatches. Safe to retry."""


class TerminalAutomationError(AutomationError):
    """Policy violations such as a blacklisted target or missing credentials."""


class PersistenceError(PostflowError):
    """The job store could not be reached."""


class JobError(PostflowError):
    pass


class JobNotFoundError(JobError):
    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransitionError(JobError):
    def __init__(self, job_id: int | None, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid job state transition for job {job_id}: {current} -> {target}")


class JobContextError(JobError):
    pass


class PipelineStepError(PostflowError):
    """A pipeline step failed after exhausting its retry policy."""

    def __init__(self, pipeline: str, step: str, error: BaseException) -> None:
        self.pipeline = pipeline
        self.step = step
        self.error = error
        super().__init__(f"{pipeline}: step '{step}' failed: {error}")


def is_terminal(exc: BaseException) -> bool:
    return isinstance(exc, (ValidationError, TerminalAutomationError))


def root_message(exc: BaseException) -> str:
    """Message of the underlying failure, without pipeline decoration."""
    if isinstance(exc, PipelineStepError):
        return f"[{exc.step}] {exc.error}"
    return str(exc) or exc.__class__.__name__
