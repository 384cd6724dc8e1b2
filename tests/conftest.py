"""Shared pytest fixtures for agentmux tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agentmux.agent_send import AgentSender
from agentmux.idempotency import IdempotencyStore
from agentmux.lifecycle import SessionLifecycleController
from agentmux.models import SessionState
from agentmux.pane_capture import PaneCaptureService
from agentmux.send_jobs import SendJobStore
from agentmux.services import Services
from agentmux.tmux_controller import TmuxController


class FakeClock:
    """Deterministic stand-in for time.time / time.monotonic / time.sleep."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_exists.return_value = True
    mock.session_state.return_value = SessionState(exists=True, has_live_pane=True)
    mock.capture_pane_tail.return_value = "Mock tmux output"
    mock.send_keys.return_value = None
    mock.send_interrupt.return_value = None
    mock.kill_session.return_value = None
    mock.list_sessions.return_value = []
    mock.active_sessions_by_activity.return_value = []
    mock.sessions_with_tags.return_value = []
    return mock


@pytest.fixture
def job_store(tmp_path: Path, clock: FakeClock) -> SendJobStore:
    store = SendJobStore(
        str(tmp_path / "send_jobs.db"),
        clock=clock.time,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
    )
    yield store
    store.close()


@pytest.fixture
def idempotency_store(tmp_path: Path) -> IdempotencyStore:
    store = IdempotencyStore(str(tmp_path / "idempotency.db"))
    yield store
    store.close()


@pytest.fixture
def services(mock_tmux, idempotency_store) -> Services:
    """
    Services with mocked components and a real idempotency store.

    Tests swap in real components (job store, lifecycle) where they need them.
    """
    return Services(
        config={},
        tmux=mock_tmux,
        jobs=MagicMock(spec=SendJobStore),
        idempotency=idempotency_store,
        capture=MagicMock(spec=PaneCaptureService),
        sender=MagicMock(spec=AgentSender),
        lifecycle=MagicMock(spec=SessionLifecycleController),
    )
