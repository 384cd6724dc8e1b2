"""Unit tests for CLI argument parsing and entry point routing."""

from unittest.mock import patch

import pytest

from agentmux.cli.main import _worker_args, apply_global_overrides, build_parser, main
from agentmux.models import SendJob, SendJobStatus


@pytest.fixture
def parser():
    return build_parser()


def test_json_before_or_after_command(parser):
    assert parser.parse_args(["--json", "agent", "capture", "amux-1"]).json is True
    assert parser.parse_args(["agent", "capture", "amux-1", "--json"]).json is True
    assert parser.parse_args(["agent", "capture", "amux-1"]).json is False


def test_send_flags(parser):
    args = parser.parse_args([
        "agent", "send", "--agent", "ws:t1", "--text", "hi", "--enter", "--wait",
        "--wait-timeout", "2m", "--idle-threshold", "500ms", "--idempotency-key", "k1",
    ])
    assert args.session is None
    assert args.agent == "ws:t1"
    assert args.enter is True
    assert args.wait is True
    assert args.async_ is False
    assert args.wait_timeout == 120
    assert args.idle_threshold == pytest.approx(0.5)
    assert args.idempotency_key == "k1"


def test_worker_argv_keeps_dash_text(parser):
    args = parser.parse_args([
        "agent", "send", "amux-1", "--text=-rf /tmp", "--process-job", "--job-id", "sj_1",
    ])
    assert args.text == "-rf /tmp"
    assert args.process_job is True
    assert args.job_id == "sj_1"


def test_stop_flags(parser):
    args = parser.parse_args(["agent", "stop", "--all", "--yes", "--no-graceful", "--grace-period", "3s"])
    assert args.stop_all is True
    assert args.yes is True
    assert args.graceful is False
    assert args.grace_period == 3


def test_job_wait_defaults(parser):
    args = parser.parse_args(["agent", "job", "wait", "sj_1"])
    assert args.timeout == 30.0
    assert args.interval == 0.2


def test_bad_duration_is_usage_error(parser):
    with pytest.raises(SystemExit) as exc_info:
        parser.parse_args(["agent", "job", "wait", "sj_1", "--timeout", "soon"])
    assert exc_info.value.code == 2


def test_send_requires_text(parser):
    with pytest.raises(SystemExit):
        parser.parse_args(["agent", "send", "amux-1"])


def test_main_without_command_prints_help(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 0
    assert "agentmux" in capsys.readouterr().out


def test_main_missing_agent_command():
    with patch("agentmux.cli.main.load_config", return_value={}):
        with pytest.raises(SystemExit) as exc_info:
            main(["agent"])
    assert exc_info.value.code == 2


def test_main_routes_and_closes_services(services, capsys):
    services.jobs.get.return_value = SendJob(id="sj_1", session_name="amux-1", status=SendJobStatus.PENDING)

    with patch("agentmux.cli.main.load_config", return_value={}), \
         patch("agentmux.cli.main.Services.from_config", return_value=services) as from_config, \
         patch.object(services, "close") as close:
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", "/tmp/agentmux.yaml", "agent", "job", "status", "sj_1"])

    assert exc_info.value.code == 0
    assert capsys.readouterr().out == "job sj_1 pending\n"
    from_config.assert_called_once_with({}, worker_args=["--config", "/tmp/agentmux.yaml"])
    close.assert_called_once()


def test_main_serve(capsys):
    with patch("agentmux.cli.main.load_config", return_value={"server": {"port": 9000}}), \
         patch("agentmux.main.run_server", return_value=0) as run_server:
        with pytest.raises(SystemExit) as exc_info:
            main(["serve", "--host", "0.0.0.0"])

    assert exc_info.value.code == 0
    run_server.assert_called_once_with({"server": {"port": 9000}}, host="0.0.0.0", port=None, worker_args=[])


def test_main_serve_forwards_config_to_workers():
    with patch("agentmux.cli.main.load_config", return_value={}), \
         patch("agentmux.main.run_server", return_value=0) as run_server:
        with pytest.raises(SystemExit):
            main(["--config", "/etc/agentmux.yaml", "serve"])

    assert run_server.call_args.kwargs["worker_args"] == ["--config", "/etc/agentmux.yaml"]


def test_list_flags(parser):
    args = parser.parse_args(["agent", "list", "--workspace", "ws-1", "--json"])
    assert args.agent_command == "list"
    assert args.workspace == "ws-1"
    assert args.json is True
    assert parser.parse_args(["agent", "list"]).workspace is None


def test_global_timeout_is_separate_from_job_wait_timeout(parser):
    args = parser.parse_args(["--timeout", "2s", "agent", "job", "wait", "sj_1", "--timeout", "1m"])
    assert args.global_timeout == 2
    assert args.timeout == 60
    assert parser.parse_args(["agent", "list"]).global_timeout is None


def test_global_overrides(parser):
    args = parser.parse_args(["--state-dir", "/srv/amux", "--timeout", "2s", "agent", "list"])
    loaded = {"paths": {"workspaces_dir": "/ws"}, "timeouts": {"tmux": {"send_keys_settle_seconds": 0.1}}}

    config = apply_global_overrides(loaded, args)

    assert config["paths"] == {"workspaces_dir": "/ws", "state_dir": "/srv/amux"}
    assert config["timeouts"]["tmux"] == {"send_keys_settle_seconds": 0.1, "command_timeout_seconds": 2.0}
    # The loaded config is left alone
    assert "state_dir" not in loaded["paths"]
    assert "command_timeout_seconds" not in loaded["timeouts"]["tmux"]


def test_worker_args_carry_config_and_timeout(parser):
    assert _worker_args(parser.parse_args(["agent", "list"])) == []
    args = parser.parse_args(["--config", "/etc/a.yaml", "--timeout", "3s", "agent", "list"])
    assert _worker_args(args) == ["--config", "/etc/a.yaml", "--timeout", "3.0"]


def test_nonpositive_global_timeout_is_usage_error():
    with patch("agentmux.cli.main.load_config", return_value={}):
        with pytest.raises(SystemExit) as exc_info:
            main(["--timeout", "0", "agent", "list"])
    assert exc_info.value.code == 2


def test_main_job_wait_gets_overall_deadline(services):
    services.jobs.wait.return_value = SendJob(id="sj_1", session_name="amux-1", status=SendJobStatus.COMPLETED)

    with patch("agentmux.cli.main.load_config", return_value={}), \
         patch("agentmux.cli.main.Services.from_config", return_value=services) as from_config, \
         patch("agentmux.cli.main.time.monotonic", return_value=100.0), \
         patch.object(services, "close"):
        with pytest.raises(SystemExit) as exc_info:
            main(["--timeout", "5s", "agent", "job", "wait", "sj_1"])

    assert exc_info.value.code == 0
    services.jobs.wait.assert_called_once_with("sj_1", timeout=30.0, poll_interval=0.2, deadline=105.0)
    config = from_config.call_args.args[0]
    assert config["timeouts"]["tmux"]["command_timeout_seconds"] == 5
    assert from_config.call_args.kwargs["worker_args"] == ["--timeout", "5.0"]
