"""Send text to agent sessions: synchronous, detached-async and resumed jobs."""

import logging
import subprocess
import sys
import time
from typing import Callable, Optional

from . import output_signals
from .errors import (
    InvalidInputError,
    JobDispatchFailedError,
    JobNotFoundError,
    NotFoundError,
    QueueTurnTimeoutError,
    SendFailedError,
    TmuxError,
)
from .models import SendJob, SendJobStatus, SendResult, WaitResponse
from .send_jobs import SendJobStore
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

NO_OUTPUT_YET = "(no output yet)"

# Consecutive capture misses before asking tmux whether the session still exists
CAPTURE_MISSES_BEFORE_STATE_CHECK = 3
MISSING_CHECKS_BEFORE_EXIT = 3


def _stable_content(content: str) -> str:
    """Pane text without spinner lines, so a ticking timer is not a change."""
    lines = []
    for raw in content.split("\n"):
        line = raw.strip()
        if not line:
            continue
        if output_signals.is_progress_noise(line) and not output_signals.looks_like_explicit_prompt(line):
            continue
        lines.append(line)
    return "\n".join(lines)


def new_lines(before: str, after: str) -> str:
    """
    Lines appended to ``after`` relative to ``before``.

    The pane scrolls, so the tail of ``before`` is matched against the head of
    ``after``; whatever follows the longest overlap is new.
    """
    pre = before.split("\n")
    cur = after.split("\n")
    for k in range(min(len(pre), len(cur)), 0, -1):
        if pre[-k:] == cur[:k]:
            return "\n".join(cur[k:]).strip()
    if after.strip() != before.strip():
        return after.strip()
    return ""


class AgentSender:
    """
    Runs send jobs against tmux sessions.

    Every execution path (inline send, detached worker, resumed job) goes
    through the session's FIFO queue turn and the job store's conditional
    status updates, so a job is typed into the pane at most once.
    """

    def __init__(
        self,
        tmux: TmuxController,
        jobs: SendJobStore,
        config: Optional[dict] = None,
        worker_args: Optional[list[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            tmux: Session directory
            jobs: Durable job store shared with detached workers
            config: Full config dict (reads ``timeouts.send``)
            worker_args: Global CLI arguments forwarded to detached workers
                (e.g. ``["--config", path]``)
        """
        self.tmux = tmux
        self.jobs = jobs
        self.config = config or {}
        self.worker_args = list(worker_args or [])
        self._sleep = sleep
        self._monotonic = monotonic

        send_config = self.config.get("timeouts", {}).get("send", {})
        self.wait_timeout_seconds = send_config.get("wait_timeout_seconds", 120)
        self.idle_threshold_seconds = send_config.get("idle_threshold_seconds", 10)
        self.poll_interval_seconds = send_config.get("poll_interval_seconds", 0.5)
        self.capture_lines = send_config.get("capture_lines", 100)
        self.initial_change_timeout_seconds = send_config.get("initial_change_timeout_seconds", 90)

    def send(
        self,
        text: str,
        session_name: Optional[str] = None,
        agent_id: Optional[str] = None,
        enter: bool = False,
        async_: bool = False,
        wait: bool = False,
        wait_timeout: Optional[float] = None,
        idle_threshold: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> SendResult:
        """
        Send ``text`` to a session identified by name or agent id.

        With ``job_id`` the stored job is resumed and executed inline (this is
        what detached workers run). With ``async_`` a worker is spawned and the
        result comes back immediately as ``pending``.

        Raises:
            InvalidInputError: bad parameters, before any job is created
            InvalidAgentIdError / AgentNotFoundError: agent id problems
            JobNotFoundError: resumed job id unknown
            NotFoundError: target session does not exist (job marked failed)
            JobDispatchFailedError: async worker could not be started
            QueueTurnTimeoutError: queue head never cleared
            SendFailedError: tmux rejected the keystrokes
        """
        session_name = (session_name or "").strip() or None
        agent_id = (agent_id or "").strip() or None
        wait_timeout = self.wait_timeout_seconds if wait_timeout is None else wait_timeout
        idle_threshold = self.idle_threshold_seconds if idle_threshold is None else idle_threshold

        if not text:
            raise InvalidInputError("--text is required")
        if not job_id and bool(session_name) == bool(agent_id):
            raise InvalidInputError("specify exactly one of a session name or --agent")
        if wait and async_:
            raise InvalidInputError("--wait and --async are mutually exclusive")
        if wait and (wait_timeout <= 0 or idle_threshold <= 0):
            raise InvalidInputError(
                "--wait-timeout and --idle-threshold must be > 0",
                details={"wait_timeout": wait_timeout, "idle_threshold": idle_threshold},
            )

        if job_id:
            job = self._load_job(job_id)
            session_name = job.session_name
            agent_id = job.agent_id
        else:
            if agent_id:
                session_name = self.tmux.resolve_agent_id(agent_id)
            job = self.jobs.create(session_name, agent_id)

        self._require_session(job, session_name)

        if async_ and not job_id:
            return self._dispatch(job, session_name, agent_id, text, enter)
        return self._execute(job, session_name, agent_id, text, enter, wait, wait_timeout, idle_threshold)

    def _load_job(self, job_id: str) -> SendJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"send job {job_id} not found", details={"job_id": job_id})
        if not job.session_name:
            self.jobs.set_status(job.id, SendJobStatus.FAILED, "stored send job is missing session name")
            raise SendFailedError(
                "stored send job is missing session name",
                details={"job_id": job.id},
                code="job_status_failed",
            )
        return job

    def _require_session(self, job: SendJob, session_name: str):
        try:
            exists = self.tmux.session_exists(session_name)
        except TmuxError as e:
            self.jobs.set_status(job.id, SendJobStatus.FAILED, str(e))
            raise
        if not exists:
            self.jobs.set_status(job.id, SendJobStatus.FAILED, "session not found")
            raise NotFoundError(
                f"session {session_name} not found",
                details={"session_name": session_name, "job_id": job.id},
            )

    # -------------------------------------------------------------------------
    # Async dispatch
    # -------------------------------------------------------------------------

    def worker_command(self, job: SendJob, session_name: str, text: str, enter: bool) -> list[str]:
        """argv that resumes ``job`` in a fresh process."""
        cmd = [sys.executable, "-m", "agentmux.cli.main", *self.worker_args,
               "agent", "send", session_name, f"--text={text}", "--process-job", "--job-id", job.id]
        if enter:
            cmd.append("--enter")
        return cmd

    def _dispatch(self, job: SendJob, session_name: str, agent_id: Optional[str], text: str, enter: bool) -> SendResult:
        cmd = self.worker_command(job, session_name, text, enter)
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            self.jobs.set_status(job.id, SendJobStatus.FAILED, f"failed to start async send processor: {e}")
            raise JobDispatchFailedError(str(e), details={"job_id": job.id}) from e
        logger.info(f"Dispatched send job {job.id} to worker pid {proc.pid}")
        return SendResult(
            session_name=session_name,
            agent_id=agent_id,
            job_id=job.id,
            status=SendJobStatus.PENDING.value,
            sent=False,
            delivered=False,
        )

    # -------------------------------------------------------------------------
    # Inline execution
    # -------------------------------------------------------------------------

    def _execute(
        self,
        job: SendJob,
        session_name: str,
        agent_id: Optional[str],
        text: str,
        enter: bool,
        wait: bool = False,
        wait_timeout: float = 0,
        idle_threshold: float = 0,
    ) -> SendResult:
        try:
            lock = self.jobs.acquire_queue_turn(session_name, job.id)
        except QueueTurnTimeoutError as e:
            self.jobs.set_status(job.id, SendJobStatus.FAILED, e.message)
            raise

        baseline = ""
        try:
            current = self.jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(f"send job {job.id} not found", details={"job_id": job.id})
            if current.status in (SendJobStatus.CANCELED, SendJobStatus.COMPLETED):
                logger.info(f"Send job {job.id} already {current.status.value}, not sending")
                return self._undelivered(current, session_name, agent_id)

            current = self.jobs.set_status(job.id, SendJobStatus.RUNNING)
            if current.status != SendJobStatus.RUNNING:
                if current.status in (SendJobStatus.CANCELED, SendJobStatus.COMPLETED):
                    return self._undelivered(current, session_name, agent_id)
                raise SendFailedError(
                    f"send job {job.id} is {current.status.value} and cannot be executed",
                    details={"job_id": job.id, "status": current.status.value, "error": current.error},
                    code="job_status_conflict",
                )

            if wait:
                baseline = self.tmux.capture_pane_tail(session_name, self.capture_lines) or ""

            try:
                self.tmux.send_keys(session_name, text, press_enter=enter)
            except TmuxError as e:
                failed = self.jobs.set_status(job.id, SendJobStatus.FAILED, e.message)
                raise SendFailedError(
                    e.message,
                    details={"job_id": job.id, "status": failed.status.value, "agent_id": agent_id},
                ) from e

            current = self.jobs.set_status(job.id, SendJobStatus.COMPLETED)
        finally:
            lock.release()

        result = SendResult(
            session_name=session_name,
            agent_id=agent_id,
            job_id=current.id,
            status=current.status.value,
            error=current.error,
            sent=current.status == SendJobStatus.COMPLETED,
            delivered=True,
        )
        if wait:
            result.response = self.wait_for_response(session_name, baseline, wait_timeout, idle_threshold)
        return result

    @staticmethod
    def _undelivered(job: SendJob, session_name: str, agent_id: Optional[str]) -> SendResult:
        return SendResult(
            session_name=session_name,
            agent_id=agent_id,
            job_id=job.id,
            status=job.status.value,
            sent=job.status == SendJobStatus.COMPLETED,
            delivered=False,
        )

    # -------------------------------------------------------------------------
    # Wait for response
    # -------------------------------------------------------------------------

    def _response(self, status: str, baseline: str, content: str, changed: bool, idle_seconds: float = 0.0) -> WaitResponse:
        delta = output_signals.compact_output(new_lines(baseline, content)) if changed else ""
        latest = output_signals.latest_line(delta or content)
        needs_input, hint = output_signals.detect_needs_input(delta)
        if not needs_input:
            needs_input, hint = output_signals.detect_needs_input(content)
        if status == "needs_input" and hint:
            latest = hint
        if not latest and status in ("timed_out", "session_exited"):
            latest = NO_OUTPUT_YET
        return WaitResponse(
            status=status,
            latest_line=latest,
            summary=output_signals.summarize(status, latest, needs_input, hint),
            needs_input=needs_input,
            input_hint=hint,
            idle_seconds=idle_seconds,
            changed=changed,
        )

    def wait_for_response(self, session_name: str, baseline: str, timeout: float, idle_threshold: float) -> WaitResponse:
        """
        Poll the pane until the agent answers and goes quiet.

        Returns when output changed from ``baseline`` and then stayed the same
        for ``idle_threshold``, immediately when an explicit prompt appears,
        when the session disappears, or at ``timeout``.
        """
        start = self._monotonic()
        deadline = start + timeout
        baseline_stable = _stable_content(baseline)
        last_content = baseline
        last_stable = baseline_stable
        changed = False
        last_change = start
        misses = 0
        missing_checks = 0

        while True:
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return self._response("timed_out", baseline, last_content, changed)
            self._sleep(min(self.poll_interval_seconds, remaining))

            content = self.tmux.capture_pane_tail(session_name, self.capture_lines)
            if content is None:
                misses += 1
                if misses < CAPTURE_MISSES_BEFORE_STATE_CHECK:
                    continue
                try:
                    exists = self.tmux.session_state(session_name).exists
                except TmuxError as e:
                    logger.debug(f"State check failed while waiting on {session_name}: {e}")
                    exists = True
                if exists:
                    misses = 0
                    missing_checks = 0
                    continue
                missing_checks += 1
                if missing_checks < MISSING_CHECKS_BEFORE_EXIT:
                    continue
                logger.info(f"Session {session_name} exited while waiting for response")
                return self._response("session_exited", baseline, last_content, changed)
            misses = 0
            missing_checks = 0

            now = self._monotonic()
            if content != baseline and content.strip():
                needs_input, _ = output_signals.detect_needs_input_prompt(content)
                if needs_input:
                    return self._response("needs_input", baseline, content, True)
            if content.strip():
                last_content = content

            stable = _stable_content(content)
            if not changed:
                if stable != baseline_stable:
                    changed = True
                    last_stable = stable
                    last_change = now
                elif now - start >= self.initial_change_timeout_seconds:
                    return self._response("timed_out", baseline, last_content, changed)
                continue

            if stable != last_stable:
                last_stable = stable
                last_change = now
                continue

            idle = now - last_change
            if idle >= idle_threshold:
                return self._response("idle", baseline, last_content, True, idle_seconds=idle)
