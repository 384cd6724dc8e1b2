"""Main entry point for the agentmux CLI."""

import argparse
import sys
import time
from typing import Optional

from . import commands
from ..config import load_config, setup_logging, state_dir
from ..services import Services


def _duration(value: str) -> float:
    try:
        return commands.parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentmux",
        description="agentmux - drive agent sessions in tmux",
    )
    parser.add_argument("--json", action="store_true", help="Emit a JSON envelope")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--config", help="Path to config.yaml (default: $AGENTMUX_CONFIG or ~/.config/agentmux/config.yaml)")
    parser.add_argument("--state-dir", help="Directory for job and idempotency state (default: paths.state_dir)")
    parser.add_argument("--timeout", dest="global_timeout", type=_duration,
                        help="Per-call tmux timeout and overall deadline for blocking waits")

    # Leaf commands also accept --json after the command name
    leaf = argparse.ArgumentParser(add_help=False)
    leaf.add_argument("--json", action="store_true", default=argparse.SUPPRESS, help="Emit a JSON envelope")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # agentmux serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve_parser.add_argument("--host", help="Bind address (default: server.host or 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Port (default: server.port or 8420)")

    agent_parser = subparsers.add_parser("agent", help="Agent session commands")
    agent_sub = agent_parser.add_subparsers(dest="agent_command", help="Agent command")

    # agentmux agent list [--workspace ID]
    list_parser = agent_sub.add_parser("list", parents=[leaf], help="List running agent sessions")
    list_parser.add_argument("--workspace", help="Only agents in this workspace")

    # agentmux agent capture <session>
    capture_parser = agent_sub.add_parser("capture", parents=[leaf], help="Print the tail of a session's pane")
    capture_parser.add_argument("session", help="tmux session name")
    capture_parser.add_argument("--lines", type=int, default=50, help="Lines to capture (default: 50)")

    # agentmux agent send (<session>|--agent ID) --text T
    send_parser = agent_sub.add_parser("send", parents=[leaf], help="Send text to a session")
    send_parser.add_argument("session", nargs="?", help="tmux session name")
    send_parser.add_argument("--agent", help="Agent ID (workspace_id:tab_id)")
    send_parser.add_argument("--text", required=True, help="Text to send")
    send_parser.add_argument("--enter", action="store_true", help="Press Enter after the text")
    send_parser.add_argument("--async", dest="async_", action="store_true", help="Queue and return immediately")
    send_parser.add_argument("--wait", action="store_true", help="Wait for the agent to respond and go idle")
    send_parser.add_argument("--wait-timeout", type=_duration, help="Max time to wait for a response (default: 120s)")
    send_parser.add_argument("--idle-threshold", type=_duration, help="Quiet time that counts as idle (default: 10s)")
    send_parser.add_argument("--idempotency-key", help="Key for safe retries (requires --json)")
    send_parser.add_argument("--process-job", action="store_true", help=argparse.SUPPRESS)
    send_parser.add_argument("--job-id", help=argparse.SUPPRESS)

    # agentmux agent stop (<session>|--agent ID|--all --yes)
    stop_parser = agent_sub.add_parser("stop", parents=[leaf], help="Stop a session (or all agents)")
    stop_parser.add_argument("session", nargs="?", help="tmux session name")
    stop_parser.add_argument("--agent", help="Agent ID (workspace_id:tab_id)")
    stop_parser.add_argument("--all", dest="stop_all", action="store_true", help="Stop every agent session")
    stop_parser.add_argument("--yes", action="store_true", help="Confirm --all")
    stop_parser.add_argument("--no-graceful", dest="graceful", action="store_false",
                             help="Kill immediately instead of interrupting first")
    stop_parser.add_argument("--grace-period", type=_duration, help="Wait after Ctrl-C before killing (default: 1.2s)")
    stop_parser.add_argument("--idempotency-key", help="Key for safe retries (requires --json)")

    # agentmux agent job status|cancel|wait <id>
    job_parser = agent_sub.add_parser("job", help="Inspect and control send jobs")
    job_sub = job_parser.add_subparsers(dest="job_command", help="Job command")

    job_status_parser = job_sub.add_parser("status", parents=[leaf], help="Show a send job")
    job_status_parser.add_argument("job_id", help="Job ID")

    job_cancel_parser = job_sub.add_parser("cancel", parents=[leaf], help="Cancel a pending send job")
    job_cancel_parser.add_argument("job_id", help="Job ID")
    job_cancel_parser.add_argument("--idempotency-key", help="Key for safe retries (requires --json)")

    job_wait_parser = job_sub.add_parser("wait", parents=[leaf], help="Wait for a send job to finish")
    job_wait_parser.add_argument("job_id", help="Job ID")
    job_wait_parser.add_argument("--timeout", type=_duration, default=30.0, help="Max wait (default: 30s)")
    job_wait_parser.add_argument("--interval", type=_duration, default=0.2, help="Poll interval (default: 200ms)")

    return parser


def _worker_args(args: argparse.Namespace) -> list[str]:
    """Global flags a detached worker needs to see the same state."""
    worker_args = ["--config", args.config] if args.config else []
    if args.global_timeout is not None:
        worker_args += ["--timeout", str(args.global_timeout)]
    return worker_args


def apply_global_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Fold ``--state-dir`` and ``--timeout`` into a copy of the loaded config."""
    config = dict(config)
    if args.state_dir:
        config["paths"] = {**config.get("paths", {}), "state_dir": args.state_dir}
    if args.global_timeout is not None:
        timeouts = dict(config.get("timeouts", {}))
        timeouts["tmux"] = {**timeouts.get("tmux", {}), "command_timeout_seconds": args.global_timeout}
        config["timeouts"] = timeouts
    return config


def dispatch(args: argparse.Namespace, services: Services, deadline: Optional[float] = None) -> int:
    """Route parsed agent commands to their implementations."""
    json_output = args.json
    if args.agent_command == "list":
        return commands.cmd_agent_list(services, workspace_id=args.workspace, json_output=json_output)
    elif args.agent_command == "capture":
        return commands.cmd_agent_capture(services, args.session, args.lines, json_output=json_output)
    elif args.agent_command == "send":
        return commands.cmd_agent_send(
            services,
            args.session,
            args.agent,
            args.text,
            enter=args.enter,
            async_=args.async_,
            wait=args.wait,
            wait_timeout=args.wait_timeout,
            idle_threshold=args.idle_threshold,
            job_id=args.job_id,
            process_job=args.process_job,
            idempotency_key=args.idempotency_key,
            json_output=json_output,
        )
    elif args.agent_command == "stop":
        return commands.cmd_agent_stop(
            services,
            args.session,
            args.agent,
            stop_all=args.stop_all,
            yes=args.yes,
            graceful=args.graceful,
            grace_period=args.grace_period,
            idempotency_key=args.idempotency_key,
            json_output=json_output,
        )
    elif args.agent_command == "job":
        if args.job_command == "status":
            return commands.cmd_agent_job_status(services, args.job_id, json_output=json_output)
        elif args.job_command == "cancel":
            return commands.cmd_agent_job_cancel(
                services, args.job_id, idempotency_key=args.idempotency_key, json_output=json_output,
            )
        elif args.job_command == "wait":
            return commands.cmd_agent_job_wait(
                services, args.job_id, timeout=args.timeout, interval=args.interval,
                deadline=deadline, json_output=json_output,
            )
    return 2


def main(argv: Optional[list[str]] = None):
    """Main entry point for agentmux."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    deadline = None
    if args.global_timeout is not None:
        if args.global_timeout <= 0:
            parser.error("--timeout must be > 0")
        deadline = time.monotonic() + args.global_timeout

    config = apply_global_overrides(load_config(args.config), args)

    if args.command == "serve":
        from ..main import run_server
        setup_logging(verbose=args.verbose)
        sys.exit(run_server(config, host=args.host, port=args.port, worker_args=_worker_args(args)))

    if args.agent_command is None or (args.agent_command == "job" and args.job_command is None):
        parser.error("missing agent command (list, capture, send, stop, job status|cancel|wait)")

    if getattr(args, "process_job", False):
        # Detached workers have no terminal; their record is the log file
        setup_logging(verbose=args.verbose, log_file=str(state_dir(config) / "worker.log"))
    else:
        setup_logging(verbose=args.verbose)

    services = Services.from_config(config, worker_args=_worker_args(args))
    try:
        sys.exit(dispatch(args, services, deadline=deadline))
    finally:
        services.close()


if __name__ == "__main__":
    main()
