"""Session termination: graceful interrupt, forced kill and stop-all."""

import logging
import time
from typing import Callable, Optional

from .errors import (
    AgentmuxError,
    ConfirmationRequiredError,
    InvalidInputError,
    NotFoundError,
    PartialStopError,
    TmuxError,
)
from .models import TAG_OWNER, TAG_TAB, TAG_TYPE, TAG_WORKSPACE, SessionActivity, SessionType, StopResult
from .tmux_controller import TmuxController
from .workspace_store import WorkspaceStore, remove_tab_for_session

logger = logging.getLogger(__name__)


class SessionLifecycleController:
    """Stops agent sessions and keeps the workspace tab registry in sync."""

    def __init__(
        self,
        tmux: TmuxController,
        workspaces: Optional[WorkspaceStore] = None,
        config: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.tmux = tmux
        self.workspaces = workspaces
        self.config = config or {}
        self._sleep = sleep
        self._monotonic = monotonic

        stop_timeouts = self.config.get("timeouts", {}).get("stop", {})
        self.grace_period_seconds = stop_timeouts.get("grace_period_seconds", 1.2)
        self.poll_interval_seconds = stop_timeouts.get("poll_interval_seconds", 0.1)

    def _grace(self, grace_period: Optional[float]) -> float:
        grace = self.grace_period_seconds if grace_period is None else grace_period
        if grace < 0:
            raise InvalidInputError("--grace-period must be >= 0", details={"grace_period": grace})
        return grace

    def stop_session(self, session_name: str, graceful: bool = True, grace_period: Optional[float] = None):
        """
        Stop one session.

        Graceful stops send Ctrl-C and poll for the session to go away,
        killing it only if it is still there when the grace period ends.

        Raises:
            TmuxError: the kill itself failed
        """
        grace = self._grace(grace_period)
        if not graceful:
            self.tmux.kill_session(session_name)
            return

        try:
            self.tmux.send_interrupt(session_name)
        except TmuxError as e:
            logger.warning(f"Interrupt failed for {session_name}, killing: {e}")
            self.tmux.kill_session(session_name)
            return
        if grace <= 0:
            self.tmux.kill_session(session_name)
            return

        deadline = self._monotonic() + grace
        while True:
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                break
            try:
                if not self.tmux.session_state(session_name).exists:
                    logger.info(f"Session {session_name} exited after interrupt")
                    return
            except TmuxError as e:
                logger.debug(f"State check failed while stopping {session_name}: {e}")
            self._sleep(min(self.poll_interval_seconds, remaining))

        logger.info(f"Session {session_name} still running after {grace}s grace period, killing")
        self.tmux.kill_session(session_name)

    def _forget_tab(self, session_name: str):
        if self.workspaces is not None:
            remove_tab_for_session(self.workspaces, session_name)

    def stop(
        self,
        session_name: Optional[str] = None,
        agent_id: Optional[str] = None,
        graceful: bool = True,
        grace_period: Optional[float] = None,
    ) -> StopResult:
        """
        Stop a session by name or agent id and drop its workspace tab.

        Raises:
            InvalidInputError: neither or both targets given, or negative grace
            InvalidAgentIdError / AgentNotFoundError: agent id problems
            NotFoundError: session does not exist
        """
        session_name = (session_name or "").strip() or None
        agent_id = (agent_id or "").strip() or None
        if bool(session_name) == bool(agent_id):
            raise InvalidInputError("specify exactly one of a session name or --agent")
        grace = self._grace(grace_period)

        if agent_id:
            session_name = self.tmux.resolve_agent_id(agent_id)
        if not self.tmux.session_state(session_name).exists:
            raise NotFoundError(f"session {session_name} not found", details={"session_name": session_name})

        self.stop_session(session_name, graceful=graceful, grace_period=grace)
        self._forget_tab(session_name)
        logger.info(f"Stopped {session_name}")
        return StopResult(stopped=[session_name], agent_id=agent_id)

    def list_agents(self, workspace_id: Optional[str] = None) -> list[SessionActivity]:
        """Running agent sessions, most recently active first."""
        sessions = self.tmux.active_sessions_by_activity(0)
        if workspace_id:
            sessions = [s for s in sessions if s.workspace_id == workspace_id]
        return sessions

    def discover_agent_sessions(self) -> list[SessionActivity]:
        """
        Every agent session, from the activity listing and the ownership tag.

        Activity-listing fields win; tagged sessions fill gaps and add sessions
        the listing missed. Order: most recently active, then the rest by name.
        """
        by_name: dict[str, SessionActivity] = {}
        for session in self.tmux.active_sessions_by_activity(0):
            by_name[session.name] = session

        tagged = self.tmux.sessions_with_tags({TAG_OWNER: ""}, [TAG_WORKSPACE, TAG_TAB, TAG_TYPE])
        for row in sorted(tagged, key=lambda r: r.name):
            session_type = row.tags.get(TAG_TYPE, "").strip()
            if session_type and session_type != SessionType.AGENT.value:
                continue
            session = by_name.get(row.name)
            if session is None:
                session = SessionActivity(name=row.name)
                by_name[row.name] = session
            session.workspace_id = session.workspace_id or row.tags.get(TAG_WORKSPACE, "").strip()
            session.tab_id = session.tab_id or row.tags.get(TAG_TAB, "").strip()
            session.type = session.type or session_type
            session.tagged = True
        return list(by_name.values())

    def stop_all(self, confirm: bool = False, graceful: bool = True, grace_period: Optional[float] = None) -> StopResult:
        """
        Stop every discovered agent session.

        Each session is attempted regardless of earlier failures.

        Raises:
            ConfirmationRequiredError: confirm is False
            PartialStopError: at least one session failed to stop
        """
        if not confirm:
            raise ConfirmationRequiredError("pass --yes to confirm stopping all agents")
        grace = self._grace(grace_period)

        stopped: list[str] = []
        stopped_agent_ids: list[str] = []
        failed: list[dict[str, str]] = []
        for session in self.discover_agent_sessions():
            try:
                self.stop_session(session.name, graceful=graceful, grace_period=grace)
            except AgentmuxError as e:
                logger.warning(f"Failed to stop {session.name}: {e.message}")
                failed.append({"session": session.name, "error": e.message})
                continue
            stopped.append(session.name)
            if session.agent_id:
                stopped_agent_ids.append(session.agent_id)
            self._forget_tab(session.name)

        if failed:
            raise PartialStopError(stopped, stopped_agent_ids, failed)
        logger.info(f"Stopped {len(stopped)} agent session(s)")
        return StopResult(stopped=stopped, stopped_agent_ids=stopped_agent_ids)
