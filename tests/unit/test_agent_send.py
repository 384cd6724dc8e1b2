"""Unit tests for AgentSender: sync, async and resumed sends plus response waiting."""

import sys
from unittest.mock import patch

import pytest

from agentmux.agent_send import NO_OUTPUT_YET, AgentSender, new_lines
from agentmux.errors import (
    AgentNotFoundError,
    InvalidInputError,
    JobDispatchFailedError,
    NotFoundError,
    SendFailedError,
    TmuxError,
)
from agentmux.models import SendJobStatus, SessionState


@pytest.fixture
def sender(mock_tmux, job_store, clock):
    return AgentSender(
        mock_tmux,
        job_store,
        worker_args=["--config", "/tmp/agentmux.yaml"],
        sleep=clock.sleep,
        monotonic=clock.monotonic,
    )


class TestValidation:
    def test_requires_text(self, sender, mock_tmux):
        with pytest.raises(InvalidInputError):
            sender.send("", session_name="amux-1")
        mock_tmux.send_keys.assert_not_called()

    @pytest.mark.parametrize("session_name,agent_id", [(None, None), ("amux-1", "ws:t1")])
    def test_requires_exactly_one_target(self, sender, session_name, agent_id):
        with pytest.raises(InvalidInputError):
            sender.send("hi", session_name=session_name, agent_id=agent_id)

    def test_wait_and_async_conflict(self, sender):
        with pytest.raises(InvalidInputError):
            sender.send("hi", session_name="amux-1", wait=True, async_=True)

    @pytest.mark.parametrize("timeout,idle", [(0, 5), (10, 0)])
    def test_wait_parameters_must_be_positive(self, sender, job_store, timeout, idle):
        with pytest.raises(InvalidInputError):
            sender.send("hi", session_name="amux-1", wait=True, wait_timeout=timeout, idle_threshold=idle)
        # Rejected before a job exists
        assert job_store.next_queued_job("amux-1") is None


class TestSyncSend:
    def test_sends_and_completes(self, sender, mock_tmux, job_store):
        result = sender.send("hello", session_name="amux-1", enter=True)

        assert result.status == "completed"
        assert result.sent is True
        assert result.delivered is True
        assert result.response is None
        mock_tmux.send_keys.assert_called_once_with("amux-1", "hello", press_enter=True)
        assert job_store.get(result.job_id).status == SendJobStatus.COMPLETED

    def test_resolves_agent_id(self, sender, mock_tmux):
        mock_tmux.resolve_agent_id.return_value = "amux-ws-t1"

        result = sender.send("hello", agent_id="ws:t1")

        assert result.session_name == "amux-ws-t1"
        assert result.agent_id == "ws:t1"
        mock_tmux.send_keys.assert_called_once_with("amux-ws-t1", "hello", press_enter=False)

    def test_unknown_agent(self, sender, mock_tmux):
        mock_tmux.resolve_agent_id.side_effect = AgentNotFoundError("no session found for agent ws:t9")

        with pytest.raises(AgentNotFoundError):
            sender.send("hello", agent_id="ws:t9")
        mock_tmux.send_keys.assert_not_called()

    def test_missing_session_fails_job(self, sender, mock_tmux, job_store):
        mock_tmux.session_exists.return_value = False

        with pytest.raises(NotFoundError) as exc_info:
            sender.send("hello", session_name="amux-gone")

        job = job_store.get(exc_info.value.details["job_id"])
        assert job.status == SendJobStatus.FAILED
        assert job.error == "session not found"
        mock_tmux.send_keys.assert_not_called()

    def test_send_keys_failure_fails_job(self, sender, mock_tmux, job_store):
        mock_tmux.send_keys.side_effect = TmuxError("tmux send-keys failed: no server running")

        with pytest.raises(SendFailedError) as exc_info:
            sender.send("hello", session_name="amux-1")

        job = job_store.get(exc_info.value.details["job_id"])
        assert job.status == SendJobStatus.FAILED
        assert job.error == "tmux send-keys failed: no server running"

    def test_lock_released_after_send(self, sender, job_store):
        result = sender.send("hello", session_name="amux-1")
        # A second send on the same session must not block
        second = sender.send("again", session_name="amux-1")
        assert result.job_id != second.job_id
        assert job_store.next_queued_job("amux-1") is None


class TestAsyncSend:
    def test_dispatches_worker(self, sender, mock_tmux, job_store):
        with patch("agentmux.agent_send.subprocess.Popen") as mock_popen:
            mock_popen.return_value.pid = 4321
            result = sender.send("hello", session_name="amux-1", enter=True, async_=True)

        assert result.status == "pending"
        assert result.sent is False
        assert result.delivered is False
        mock_tmux.send_keys.assert_not_called()

        cmd = mock_popen.call_args.args[0]
        assert cmd == [
            sys.executable, "-m", "agentmux.cli.main", "--config", "/tmp/agentmux.yaml",
            "agent", "send", "amux-1", "--text=hello", "--process-job", "--job-id", result.job_id,
            "--enter",
        ]
        assert mock_popen.call_args.kwargs["start_new_session"] is True
        assert job_store.get(result.job_id).status == SendJobStatus.PENDING

    def test_dispatch_failure_fails_job(self, sender, job_store):
        with patch("agentmux.agent_send.subprocess.Popen", side_effect=OSError("fork failed")):
            with pytest.raises(JobDispatchFailedError) as exc_info:
                sender.send("hello", session_name="amux-1", async_=True)

        job = job_store.get(exc_info.value.details["job_id"])
        assert job.status == SendJobStatus.FAILED
        assert "failed to start async send processor" in job.error


class TestResume:
    def test_resumes_pending_job(self, sender, mock_tmux, job_store):
        job = job_store.create("amux-1")

        result = sender.send("hello", job_id=job.id, enter=True)

        assert result.job_id == job.id
        assert result.status == "completed"
        mock_tmux.send_keys.assert_called_once_with("amux-1", "hello", press_enter=True)

    def test_canceled_job_is_not_sent(self, sender, mock_tmux, job_store):
        job = job_store.create("amux-1")
        job_store.cancel(job.id)

        result = sender.send("hello", job_id=job.id)

        assert result.status == "canceled"
        assert result.delivered is False
        assert result.sent is False
        mock_tmux.send_keys.assert_not_called()

    def test_completed_job_is_not_resent(self, sender, mock_tmux, job_store):
        job = job_store.create("amux-1")
        job_store.set_status(job.id, SendJobStatus.COMPLETED)

        result = sender.send("hello", job_id=job.id)

        assert result.status == "completed"
        assert result.delivered is False
        mock_tmux.send_keys.assert_not_called()

    def test_failed_job_is_a_conflict(self, sender, mock_tmux, job_store):
        job = job_store.create("amux-1")
        job_store.set_status(job.id, SendJobStatus.FAILED, "earlier failure")

        with pytest.raises(SendFailedError) as exc_info:
            sender.send("hello", job_id=job.id)
        assert exc_info.value.code == "job_status_conflict"
        mock_tmux.send_keys.assert_not_called()

    def test_unknown_job(self, sender):
        with pytest.raises(NotFoundError):
            sender.send("hello", job_id="sj_missing")


class TestWaitForResponse:
    def test_idle_after_change(self, sender, mock_tmux, clock):
        mock_tmux.capture_pane_tail.side_effect = [
            "prompt>\nworking on it",
            "prompt>\nDone.",
            "prompt>\nDone.",
            "prompt>\nDone.",
        ]

        response = sender.wait_for_response("amux-1", "prompt>", timeout=30, idle_threshold=1.0)

        assert response.status == "idle"
        assert response.changed is True
        assert response.latest_line == "Done."
        assert response.summary == "Done."
        assert response.idle_seconds == pytest.approx(1.0)

    def test_spinner_ticks_are_not_changes(self, sender, mock_tmux, clock):
        sender.initial_change_timeout_seconds = 2
        mock_tmux.capture_pane_tail.side_effect = [
            f"prompt>\n• Working ({n}s • esc to interrupt)" for n in range(1, 10)
        ]

        response = sender.wait_for_response("amux-1", "prompt>", timeout=30, idle_threshold=1.0)

        assert response.status == "timed_out"
        assert response.changed is False

    def test_explicit_prompt_returns_immediately(self, sender, mock_tmux, clock):
        mock_tmux.capture_pane_tail.return_value = "prompt>\nDo you want me to proceed? (y/N)"

        response = sender.wait_for_response("amux-1", "prompt>", timeout=30, idle_threshold=5)

        assert response.status == "needs_input"
        assert response.needs_input is True
        assert response.input_hint == "Do you want me to proceed? (y/N)"
        assert response.latest_line == "Do you want me to proceed? (y/N)"
        assert mock_tmux.capture_pane_tail.call_count == 1

    def test_session_exit(self, sender, mock_tmux, clock):
        mock_tmux.capture_pane_tail.return_value = None
        mock_tmux.session_state.return_value = SessionState(exists=False)

        response = sender.wait_for_response("amux-1", "", timeout=30, idle_threshold=5)

        assert response.status == "session_exited"
        assert response.session_exited is True
        assert response.latest_line == NO_OUTPUT_YET
        assert mock_tmux.capture_pane_tail.call_count == 5
        assert mock_tmux.session_state.call_count == 3

    def test_capture_misses_on_live_session_keep_waiting(self, sender, mock_tmux, clock):
        mock_tmux.capture_pane_tail.return_value = None
        mock_tmux.session_state.return_value = SessionState(exists=True, has_live_pane=True)

        response = sender.wait_for_response("amux-1", "", timeout=3, idle_threshold=5)

        assert response.status == "timed_out"

    def test_timeout(self, sender, mock_tmux, clock):
        mock_tmux.capture_pane_tail.return_value = "prompt>"
        start = clock.now

        response = sender.wait_for_response("amux-1", "prompt>", timeout=5, idle_threshold=1)

        assert response.status == "timed_out"
        assert response.timed_out is True
        assert response.summary == "prompt>"
        assert clock.now - start == pytest.approx(5.0)

    def test_initial_change_timeout(self, sender, mock_tmux, clock):
        sender.initial_change_timeout_seconds = 2
        mock_tmux.capture_pane_tail.return_value = "prompt>"
        start = clock.now

        response = sender.wait_for_response("amux-1", "prompt>", timeout=60, idle_threshold=1)

        assert response.status == "timed_out"
        assert clock.now - start == pytest.approx(2.0)

    def test_send_with_wait_captures_baseline_first(self, sender, mock_tmux):
        mock_tmux.capture_pane_tail.side_effect = [
            "prompt>",
            "prompt>\nhello\nAll done.",
            "prompt>\nhello\nAll done.",
            "prompt>\nhello\nAll done.",
        ]

        result = sender.send("hello", session_name="amux-1", enter=True, wait=True, idle_threshold=0.5)

        assert result.status == "completed"
        assert result.response.status == "idle"
        assert result.response.latest_line == "All done."
        assert result.to_dict()["response"]["status"] == "idle"


class TestNewLines:
    def test_appended_lines(self):
        assert new_lines("a\nb", "a\nb\nc\nd") == "c\nd"

    def test_scrolled_pane(self):
        assert new_lines("a\nb\nc", "b\nc\nd") == "d"

    def test_no_overlap(self):
        assert new_lines("a", "x\ny") == "x\ny"

    def test_unchanged(self):
        assert new_lines("a\nb", "a\nb") == ""
