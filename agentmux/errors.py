"""Typed errors raised by the agentmux core.

Every error carries a stable ``code`` for the JSON envelope, a human message,
optional structured ``details`` and the process exit status the command
boundary maps it to.
"""

from typing import Any, Optional

EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1
EXIT_USAGE = 2
EXIT_NOT_FOUND = 3
EXIT_UNSAFE_BLOCKED = 4


class AgentmuxError(Exception):
    """Base class for errors surfaced at the command boundary."""

    code = "internal_error"
    exit_code = EXIT_INTERNAL_ERROR
    # Whether an idempotent command may persist this outcome for replay.
    cacheable = True

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code


class InvalidInputError(AgentmuxError):
    """Malformed parameters or conflicting selectors. Raised before any side effect."""

    code = "invalid_input"
    exit_code = EXIT_USAGE


class InvalidAgentIdError(InvalidInputError):
    code = "invalid_agent_id"


class NotFoundError(AgentmuxError):
    """Target session, job or agent does not exist."""

    code = "not_found"
    exit_code = EXIT_NOT_FOUND


class AgentNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


class CaptureFailedError(NotFoundError):
    """Capture retries were exhausted while the session still exists."""

    code = "capture_failed"


class ConfirmationRequiredError(AgentmuxError):
    """Batch-destructive operation invoked without explicit confirmation.

    Never persisted for replay: a retry that adds the confirmation flag must
    execute.
    """

    code = "confirmation_required"
    exit_code = EXIT_UNSAFE_BLOCKED
    cacheable = False


class TmuxError(AgentmuxError):
    """tmux could not be reached or a tmux command failed unexpectedly."""

    code = "tmux_failed"


class SendFailedError(AgentmuxError):
    code = "send_failed"


class JobDispatchFailedError(AgentmuxError):
    code = "job_dispatch_failed"


class QueueTurnTimeoutError(AgentmuxError):
    code = "job_queue_failed"


class JobWaitTimeoutError(AgentmuxError):
    """A job wait hit its deadline; ``status`` is the last non-terminal status seen."""

    code = "timeout"

    def __init__(self, job_id: str, status: str):
        super().__init__(
            "timed out waiting for job completion",
            details={"job_id": job_id, "status": status},
        )
        self.job_id = job_id
        self.status = status


class JobFailedError(AgentmuxError):
    """The awaited job reached ``failed``. The wait mechanics worked; the send did not."""

    code = "job_failed"

    def __init__(self, job):
        super().__init__(
            f"job {job.id} failed: {job.error}" if job.error else f"job {job.id} failed",
            details={"job_id": job.id, "status": job.status.value, "error": job.error},
        )
        self.job = job


class PartialStopError(AgentmuxError):
    """Stop-all finished with at least one per-session failure."""

    code = "stop_partial_failed"

    def __init__(self, stopped: list[str], stopped_agent_ids: list[str], failed: list[dict[str, str]]):
        super().__init__(
            "failed to stop one or more agents",
            details={
                "stopped": stopped,
                "stopped_agent_ids": stopped_agent_ids,
                "failed": failed,
            },
        )
        self.stopped = stopped
        self.stopped_agent_ids = stopped_agent_ids
        self.failed = failed
