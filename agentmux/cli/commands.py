"""Command implementations for the agentmux CLI.

Each ``cmd_*`` function returns the process exit status. Core errors are
turned into a JSON envelope (``--json``) or a stderr message here and nowhere
else.
"""

import logging
import re
import sys
from typing import Callable, Optional

from .. import envelope
from ..errors import (
    EXIT_OK,
    EXIT_USAGE,
    AgentmuxError,
    ConfirmationRequiredError,
    InvalidInputError,
    JobFailedError,
    JobNotFoundError,
    PartialStopError,
)
from ..services import Services

logger = logging.getLogger(__name__)

CMD_SEND = "agent.send"
CMD_STOP = "agent.stop"
CMD_STOP_ALL = "agent.stop.all"
CMD_JOB_CANCEL = "agent.job.cancel"


def parse_duration(duration_str: str) -> float:
    """
    Parse a duration string into seconds.

    Supports plain seconds (``1.5``) and unit suffixes: 500ms, 30s, 5m, 1h, 1m30s.

    Raises:
        ValueError: If format is invalid
    """
    if duration_str is None or not str(duration_str).strip():
        raise ValueError("Empty duration string")
    duration_str = str(duration_str).strip()

    try:
        return float(duration_str)
    except ValueError:
        pass

    pattern = re.compile(r'(\d+(?:\.\d+)?)(ms|[smh])', re.IGNORECASE)
    matches = pattern.findall(duration_str)
    if not matches or "".join(v + u for v, u in matches).lower() != duration_str.lower():
        raise ValueError(f"Invalid duration format: {duration_str}")

    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}
    return sum(float(value) * multipliers[unit.lower()] for value, unit in matches)


def _write(payload: bytes):
    sys.stdout.write(payload.decode("utf-8"))
    sys.stdout.flush()


def _report_error(error: AgentmuxError, json_output: bool) -> bytes:
    if json_output:
        payload = envelope.render(envelope.failure(error))
        _write(payload)
        return payload
    print(f"Error: {error.message}", file=sys.stderr)
    if isinstance(error, PartialStopError):
        for failure in error.failed:
            print(f"  failed to stop {failure['session']}: {failure['error']}", file=sys.stderr)
    return b""


def run_command(
    services: Services,
    json_output: bool,
    action: Callable[[], dict],
    human: Callable[[dict], None],
    command: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    precheck: Optional[Callable[[], None]] = None,
) -> int:
    """
    Execute ``action`` with replay protection and render its outcome.

    Args:
        action: Returns the envelope ``data`` payload, or raises AgentmuxError
        human: Prints the non-JSON rendering of a successful payload
        command: Idempotency namespace (mutating commands only)
        idempotency_key: Replay key; requires ``json_output``
        precheck: Validation that must run before any replay (never cached)

    Returns:
        Process exit status
    """
    key = (idempotency_key or "").strip()
    if key and not json_output:
        print("Error: --idempotency-key requires --json", file=sys.stderr)
        return EXIT_USAGE

    try:
        if precheck is not None:
            precheck()
    except AgentmuxError as e:
        _report_error(e, json_output)
        return e.exit_code

    if key and command:
        record = services.idempotency.lookup(command, key)
        if record is not None:
            logger.info(f"Replaying {command} outcome for idempotency key {key}")
            _write(record.envelope)
            return record.exit_code

    cacheable = True
    try:
        data = action()
        exit_code = EXIT_OK
        result = envelope.success(data)
    except JobFailedError as e:
        # The wait itself worked; the job payload is the answer, but the exit says failed
        data = e.job.to_dict()
        exit_code = e.exit_code
        result = envelope.success(data)
    except AgentmuxError as e:
        exit_code = e.exit_code
        cacheable = e.cacheable
        if not json_output:
            _report_error(e, json_output)
            return exit_code
        result = envelope.failure(e)

    if not json_output:
        human(data)
        return exit_code

    payload = envelope.render(result)
    if key and command and cacheable:
        stored = services.idempotency.record(command, key, exit_code, payload)
        if stored is not None:
            # A concurrent writer may have won; everyone reports the winning outcome
            payload, exit_code = stored.envelope, stored.exit_code
    _write(payload)
    return exit_code


def cmd_agent_list(services: Services, workspace_id: Optional[str] = None, json_output: bool = False) -> int:
    """List running agent sessions, optionally limited to one workspace."""
    def action():
        return [s.to_dict() for s in services.lifecycle.list_agents(workspace_id)]

    def human(data):
        if not data:
            print("No running agents.")
            return
        for agent in data:
            if agent.get("agent_id"):
                print(f"  {agent['session_name']:<40} id={agent['agent_id']:<24} ws={agent['workspace_id']:<16} "
                      f"tab={agent['tab_id']:<10} type={agent['type']}")
            else:
                print(f"  {agent['session_name']:<40} ws={agent['workspace_id']:<16} "
                      f"tab={agent['tab_id']:<10} type={agent['type']}")

    return run_command(services, json_output, action, human)


def cmd_agent_capture(services: Services, session_name: str, lines: int, json_output: bool = False) -> int:
    """
    Print the tail of a session's pane.

    Exit codes:
        0: Captured (or the session exited before capture)
        2: --lines <= 0
        3: Capture failed while the session still exists
    """
    def action():
        return services.capture.capture(session_name, lines).to_dict()

    def human(data):
        if data["status"] == "session_exited":
            print(data["summary"])
            return
        print(data["content"])
        if data.get("needs_input"):
            print(f"\n[needs input] {data['input_hint']}", file=sys.stderr)

    return run_command(services, json_output, action, human)


def cmd_agent_send(
    services: Services,
    session_name: Optional[str],
    agent_id: Optional[str],
    text: str,
    enter: bool = False,
    async_: bool = False,
    wait: bool = False,
    wait_timeout: Optional[float] = None,
    idle_threshold: Optional[float] = None,
    job_id: Optional[str] = None,
    process_job: bool = False,
    idempotency_key: Optional[str] = None,
    json_output: bool = False,
) -> int:
    """
    Send text to a session.

    Exit codes:
        0: Sent, queued (--async), or the job was already finished
        1: Send, dispatch or queue failure
        2: Invalid parameters
        3: Session, agent or job not found
    """
    def precheck():
        if process_job and not job_id:
            raise InvalidInputError("--process-job requires --job-id")
        if job_id and not process_job:
            raise InvalidInputError("--job-id is only valid with --process-job")

    def action():
        result = services.sender.send(
            text,
            session_name=session_name,
            agent_id=agent_id,
            enter=enter,
            async_=async_,
            wait=wait,
            wait_timeout=wait_timeout,
            idle_threshold=idle_threshold,
            job_id=job_id,
        )
        return result.to_dict()

    def human(data):
        target = data["session_name"]
        if data["status"] == "canceled":
            print(f"Send job {data['job_id']} canceled before execution")
        elif data["status"] == "pending":
            print(f"Queued text to {target} (job: {data['job_id']})")
        elif data["status"] == "completed" and not data["delivered"]:
            print(f"Send job {data['job_id']} already completed")
        else:
            print(f"Sent text to {target} (job: {data['job_id']})")
        response = data.get("response")
        if response is None:
            return
        if response["needs_input"]:
            hint = response["input_hint"]
            print(f"Agent needs input: {hint}" if hint else "Agent needs input")
        elif response["timed_out"]:
            print("Timed out waiting for response")
        elif response["session_exited"]:
            print("Session exited while waiting")
        else:
            print(f"Agent idle after {response['idle_seconds']:.1f}s")
        if response["summary"]:
            print(response["summary"])

    return run_command(
        services, json_output, action, human,
        command=CMD_SEND, idempotency_key=idempotency_key, precheck=precheck,
    )


def cmd_agent_stop(
    services: Services,
    session_name: Optional[str],
    agent_id: Optional[str],
    stop_all: bool = False,
    yes: bool = False,
    graceful: bool = True,
    grace_period: Optional[float] = None,
    idempotency_key: Optional[str] = None,
    json_output: bool = False,
) -> int:
    """
    Stop one session, or every agent session with --all --yes.

    Exit codes:
        0: Stopped
        1: Stop failed (including partial stop-all failures)
        2: Invalid parameters
        3: Session or agent not found
        4: --all without --yes
    """
    def precheck():
        if grace_period is not None and grace_period < 0:
            raise InvalidInputError("--grace-period must be >= 0", details={"grace_period": grace_period})
        if stop_all and (session_name or agent_id):
            raise InvalidInputError("--all cannot be combined with a session name or --agent")
        if stop_all and not yes:
            # Checked before replay so a retry that adds --yes always executes
            raise ConfirmationRequiredError("pass --yes to confirm stopping all agents")

    if stop_all:
        def action():
            return services.lifecycle.stop_all(confirm=True, graceful=graceful, grace_period=grace_period).to_dict()

        def human(data):
            print(f"Stopped {len(data['stopped'])} agent(s)")

        return run_command(
            services, json_output, action, human,
            command=CMD_STOP_ALL, idempotency_key=idempotency_key, precheck=precheck,
        )

    def action():
        return services.lifecycle.stop(
            session_name=session_name, agent_id=agent_id, graceful=graceful, grace_period=grace_period,
        ).to_dict()

    def human(data):
        print(f"Stopped {data['stopped'][0]}")

    return run_command(
        services, json_output, action, human,
        command=CMD_STOP, idempotency_key=idempotency_key, precheck=precheck,
    )


def _print_job(data: dict):
    if data.get("error"):
        print(f"job {data['job_id']} {data['status']} ({data['error']})")
    else:
        print(f"job {data['job_id']} {data['status']}")


def cmd_agent_job_status(services: Services, job_id: str, json_output: bool = False) -> int:
    """Show a send job. Exit 3 if the job does not exist."""
    def action():
        job = services.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError("job not found", details={"job_id": job_id})
        return job.to_dict()

    return run_command(services, json_output, action, _print_job)


def cmd_agent_job_cancel(
    services: Services,
    job_id: str,
    idempotency_key: Optional[str] = None,
    json_output: bool = False,
) -> int:
    """Cancel a pending send job. Canceling a job that already started is not an error."""
    def action():
        job, canceled = services.jobs.cancel(job_id)
        return {"job_id": job.id, "status": job.status.value, "canceled": canceled}

    def human(data):
        if data["canceled"]:
            print(f"Canceled job {data['job_id']}")
        else:
            print(f"Job {data['job_id']} is {data['status']}; not canceled")

    return run_command(
        services, json_output, action, human,
        command=CMD_JOB_CANCEL, idempotency_key=idempotency_key,
    )


def cmd_agent_job_wait(
    services: Services,
    job_id: str,
    timeout: float = 30.0,
    interval: float = 0.2,
    deadline: Optional[float] = None,
    json_output: bool = False,
) -> int:
    """
    Block until a send job is terminal.

    Exit codes:
        0: Job completed or was canceled
        1: Job failed, or the wait timed out
        2: timeout/interval <= 0
        3: Job not found
    """
    def action():
        return services.jobs.wait(job_id, timeout=timeout, poll_interval=interval, deadline=deadline).to_dict()

    return run_command(services, json_output, action, _print_job)
