"""Integration tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from agentmux.errors import CaptureFailedError, JobWaitTimeoutError, NotFoundError, TmuxError
from agentmux.lifecycle import SessionLifecycleController
from agentmux.models import CaptureResult, SendJobStatus, SendResult, SessionActivity
from agentmux.server import create_app


@pytest.fixture
def test_client(services):
    """Create a FastAPI TestClient with mocked dependencies."""
    app = create_app(services, config={})
    return TestClient(app)


class TestHealth:
    def test_healthy(self, test_client, services):
        services.tmux.list_sessions.return_value = ["amux-1", "amux-2"]

        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "tmux": True, "sessions": 2}

    def test_degraded_when_tmux_unreachable(self, test_client, services):
        services.tmux.list_sessions.side_effect = TmuxError("tmux is not installed or not on PATH")

        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"


class TestCapture:
    def test_capture(self, test_client, services):
        services.capture.capture.return_value = CaptureResult(
            session_name="amux-1", content="hello", lines=20, status="captured", latest_line="hello",
        )

        response = test_client.get("/sessions/amux-1/capture", params={"lines": 20})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["data"]["content"] == "hello"
        services.capture.capture.assert_called_once_with("amux-1", 20)

    def test_capture_failed_is_404(self, test_client, services):
        services.capture.capture.side_effect = CaptureFailedError("could not capture pane output")

        response = test_client.get("/sessions/amux-1/capture")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "capture_failed"


class TestSend:
    def test_send(self, test_client, services):
        services.sender.send.return_value = SendResult(
            session_name="amux-1", job_id="sj_1", status="completed", sent=True, delivered=True,
        )

        response = test_client.post("/sessions/amux-1/send", json={"text": "hello", "enter": True})

        assert response.status_code == 200
        assert response.json()["data"]["job_id"] == "sj_1"
        services.sender.send.assert_called_once_with(
            "hello", session_name="amux-1", agent_id=None, enter=True, async_=False,
            wait=False, wait_timeout=None, idle_threshold=None,
        )

    def test_idempotency_key_replays_response(self, test_client, services):
        services.sender.send.return_value = SendResult(
            session_name="amux-1", job_id="sj_1", status="pending",
        )
        headers = {"Idempotency-Key": "req-1"}

        first = test_client.post("/sessions/amux-1/send", json={"text": "hi", "asynchronous": True}, headers=headers)
        second = test_client.post("/sessions/amux-1/send", json={"text": "hi", "asynchronous": True}, headers=headers)

        assert first.content == second.content
        assert second.status_code == 200
        assert services.sender.send.call_count == 1

    def test_http_keys_do_not_collide_with_cli_keys(self, test_client, services):
        services.idempotency.record("agent.send", "req-1", 0, b'{"ok": true}\n')
        services.sender.send.return_value = SendResult(session_name="amux-1", job_id="sj_9", status="completed")

        response = test_client.post("/sessions/amux-1/send", json={"text": "hi"}, headers={"Idempotency-Key": "req-1"})

        assert response.json()["data"]["job_id"] == "sj_9"

    def test_not_found_is_404_and_replayed(self, test_client, services):
        services.sender.send.side_effect = NotFoundError("session amux-1 not found")
        headers = {"Idempotency-Key": "req-2"}

        first = test_client.post("/sessions/amux-1/send", json={"text": "hi"}, headers=headers)
        second = test_client.post("/sessions/amux-1/send", json={"text": "hi"}, headers=headers)

        assert first.status_code == second.status_code == 404
        assert first.content == second.content
        assert services.sender.send.call_count == 1

    def test_missing_text_is_422(self, test_client, services):
        response = test_client.post("/sessions/amux-1/send", json={})
        assert response.status_code == 422
        services.sender.send.assert_not_called()


class TestAgents:
    def test_list_agents(self, test_client, services, mock_tmux):
        services.lifecycle = SessionLifecycleController(mock_tmux, None)
        mock_tmux.active_sessions_by_activity.return_value = [
            SessionActivity(name="amux-1", workspace_id="ws", tab_id="t1", type="agent", last_activity=20),
            SessionActivity(name="amux-2", workspace_id="other", last_activity=10),
        ]

        response = test_client.get("/agents", params={"workspace_id": "ws"})

        assert response.status_code == 200
        assert response.json()["data"] == [
            {"session_name": "amux-1", "agent_id": "ws:t1", "workspace_id": "ws", "tab_id": "t1", "type": "agent"},
        ]

    def test_list_agents_tmux_failure_is_502(self, test_client, services):
        services.lifecycle.list_agents.side_effect = TmuxError("tmux is not installed or not on PATH")

        response = test_client.get("/agents")

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "tmux_failed"


class TestStop:
    @pytest.fixture
    def lifecycle(self, services, mock_tmux, clock):
        services.lifecycle = SessionLifecycleController(
            mock_tmux, None, sleep=clock.sleep, monotonic=clock.monotonic,
        )
        return services.lifecycle

    def test_stop_single(self, test_client, lifecycle, mock_tmux):
        response = test_client.post("/sessions/amux-1/stop", json={"graceful": False})

        assert response.status_code == 200
        assert response.json()["data"] == {"stopped": ["amux-1"]}
        mock_tmux.kill_session.assert_called_once_with("amux-1")

    def test_stop_all_confirmation_is_not_cached(self, test_client, lifecycle, mock_tmux):
        mock_tmux.active_sessions_by_activity.return_value = [SessionActivity(name="amux-1", last_activity=10)]
        headers = {"Idempotency-Key": "stop-1"}

        blocked = test_client.post("/agents/stop-all", json={}, headers=headers)
        assert blocked.status_code == 409
        assert blocked.json()["error"]["code"] == "confirmation_required"
        mock_tmux.kill_session.assert_not_called()

        confirmed = test_client.post("/agents/stop-all", json={"confirm": True, "graceful": False}, headers=headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["stopped"] == ["amux-1"]
        mock_tmux.kill_session.assert_called_once_with("amux-1")

    def test_stop_all_partial_failure(self, test_client, lifecycle, mock_tmux):
        mock_tmux.active_sessions_by_activity.return_value = [
            SessionActivity(name="amux-1", last_activity=20),
            SessionActivity(name="amux-2", last_activity=10),
        ]
        mock_tmux.kill_session.side_effect = [TmuxError("tmux kill-session failed"), None]

        response = test_client.post("/agents/stop-all", json={"confirm": True, "graceful": False})

        assert response.status_code == 500
        details = response.json()["error"]["details"]
        assert details["stopped"] == ["amux-2"]
        assert details["failed"] == [{"session": "amux-1", "error": "tmux kill-session failed"}]


class TestJobs:
    @pytest.fixture
    def jobs(self, services, job_store):
        services.jobs = job_store
        return job_store

    def test_get_unknown_job(self, test_client, jobs):
        response = test_client.get("/jobs/sj_missing")
        assert response.status_code == 404
        assert response.json()["error"]["details"] == {"job_id": "sj_missing"}

    def test_get_job(self, test_client, jobs):
        job = jobs.create("amux-1")

        response = test_client.get(f"/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "pending"

    def test_cancel_then_wait(self, test_client, jobs):
        job = jobs.create("amux-1")

        canceled = test_client.post(f"/jobs/{job.id}/cancel")
        assert canceled.json()["data"] == {"job_id": job.id, "status": "canceled", "canceled": True}

        again = test_client.post(f"/jobs/{job.id}/cancel")
        assert again.json()["data"]["canceled"] is False

        waited = test_client.post(f"/jobs/{job.id}/wait", json={"timeout": 1})
        assert waited.status_code == 200
        assert waited.json()["data"]["status"] == "canceled"

    def test_wait_on_failed_job_returns_job(self, test_client, jobs):
        job = jobs.create("amux-1")
        jobs.set_status(job.id, SendJobStatus.FAILED, "session not found")

        response = test_client.post(f"/jobs/{job.id}/wait")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "failed"

    def test_wait_timeout_is_504(self, test_client, services):
        services.jobs.wait.side_effect = JobWaitTimeoutError("sj_1", "running")

        response = test_client.post("/jobs/sj_1/wait", json={"timeout": 0.5})

        assert response.status_code == 504
        assert response.json()["error"]["details"]["status"] == "running"

    def test_wait_rejects_bad_interval(self, test_client, jobs):
        job = jobs.create("amux-1")

        response = test_client.post(f"/jobs/{job.id}/wait", json={"timeout": 1, "interval": 0})

        assert response.status_code == 400
