"""tmux operations for querying and controlling agent sessions."""

import logging
import subprocess
import time
from typing import Iterable, Optional

from .errors import AgentNotFoundError, TmuxError
from .models import (
    SESSION_PREFIX,
    TAG_OWNER,
    TAG_TAB,
    TAG_TYPE,
    TAG_WORKSPACE,
    SessionActivity,
    SessionState,
    SessionType,
    TaggedSession,
    parse_agent_id,
)

logger = logging.getLogger(__name__)


def is_truthy_tag(value: Optional[str]) -> bool:
    value = (value or "").strip()
    return value not in ("", "0")


class TmuxController:
    """
    Live view of the tmux server plus the primitives agentmux needs.

    Nothing is cached: every call asks tmux. An empty or False answer is a
    valid result; failures to talk to tmux raise TmuxError.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        tmux_config = self.config.get("tmux", {})
        self.server_name = tmux_config.get("server_name")
        self.config_path = tmux_config.get("config_path")

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})
        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.3)

    def _run_tmux(self, *args: str) -> subprocess.CompletedProcess:
        """Run a tmux command, wrapping transport failures in TmuxError."""
        cmd = ["tmux"]
        if self.server_name:
            cmd += ["-L", self.server_name]
        if self.config_path:
            cmd += ["-f", self.config_path]
        cmd += list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.command_timeout_seconds,
            )
        except FileNotFoundError as e:
            raise TmuxError("tmux is not installed or not on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise TmuxError(f"tmux {args[0]} timed out after {self.command_timeout_seconds}s") from e

    def _check(self, result: subprocess.CompletedProcess, action: str, allow_missing: bool = False) -> bool:
        """
        Interpret a tmux exit status.

        Returns True on success, False when tmux reports the target (or the
        server) is missing and ``allow_missing`` is set. Raises otherwise.
        """
        if result.returncode == 0:
            return True
        if allow_missing and result.returncode == 1:
            return False
        stderr = (result.stderr or "").strip()
        raise TmuxError(
            f"tmux {action} failed: {stderr or f'exit status {result.returncode}'}",
            details={"action": action, "returncode": result.returncode},
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        if not session_name:
            return False
        result = self._run_tmux("has-session", "-t", session_name)
        return self._check(result, "has-session", allow_missing=True)

    def has_live_pane(self, session_name: str) -> bool:
        """True if at least one pane in the session is not dead."""
        result = self._run_tmux("list-panes", "-t", session_name, "-F", "#{pane_dead}")
        if not self._check(result, "list-panes", allow_missing=True):
            # Session may have died between checks
            return False
        return any(line.strip() == "0" for line in result.stdout.split())

    def session_state(self, session_name: str) -> SessionState:
        """Existence and live-pane state for one session."""
        if not session_name:
            return SessionState()
        if not self.session_exists(session_name):
            return SessionState(exists=False)
        return SessionState(exists=True, has_live_pane=self.has_live_pane(session_name))

    def list_sessions(self) -> list[str]:
        """List all tmux session names."""
        result = self._run_tmux("list-sessions", "-F", "#{session_name}")
        if not self._check(result, "list-sessions", allow_missing=True):
            return []
        return [s.strip() for s in result.stdout.strip().split("\n") if s.strip()]

    def active_sessions_by_activity(self, window_seconds: float = 0) -> list[SessionActivity]:
        """
        Agent sessions ordered by most recent window activity.

        Args:
            window_seconds: When > 0, only sessions active within this many
                seconds are returned. 0 returns every agent session.

        Returns:
            Sessions that carry the ownership tag (or the legacy name prefix)
            and whose type tag is ``agent`` or unset.
        """
        fmt = "\t".join([
            "#{session_name}",
            "#{window_activity}",
            "#{" + TAG_OWNER + "}",
            "#{" + TAG_WORKSPACE + "}",
            "#{" + TAG_TAB + "}",
            "#{" + TAG_TYPE + "}",
        ])
        result = self._run_tmux("list-windows", "-a", "-F", fmt)
        if not self._check(result, "list-windows", allow_missing=True):
            return []

        now = time.time()
        latest: dict[str, SessionActivity] = {}
        for line in result.stdout.splitlines():
            parts = [p.strip() for p in line.split("\t")]
            if len(parts) < 6 or not parts[0]:
                continue
            name, activity_raw, owner, workspace_id, tab_id, session_type = parts[:6]
            tagged = is_truthy_tag(owner)
            if not tagged and not name.startswith(SESSION_PREFIX):
                continue
            if session_type and session_type != SessionType.AGENT.value:
                continue
            try:
                activity = int(activity_raw)
            except ValueError:
                continue
            if activity <= 0:
                continue
            if window_seconds > 0 and now - activity > window_seconds:
                continue

            existing = latest.get(name)
            if existing is None:
                latest[name] = SessionActivity(
                    name=name,
                    workspace_id=workspace_id,
                    tab_id=tab_id,
                    type=session_type,
                    tagged=tagged,
                    last_activity=activity,
                )
                continue
            # Several windows per session: keep the newest activity, fill gaps
            existing.last_activity = max(existing.last_activity, activity)
            existing.workspace_id = existing.workspace_id or workspace_id
            existing.tab_id = existing.tab_id or tab_id
            existing.type = existing.type or session_type
            existing.tagged = existing.tagged or tagged

        return sorted(latest.values(), key=lambda s: (-s.last_activity, s.name))

    def sessions_with_tags(
        self,
        required: Optional[dict[str, str]] = None,
        optional_keys: Iterable[str] = (),
    ) -> list[TaggedSession]:
        """
        Sessions whose tags satisfy ``required``.

        A required value of "" means the tag must be truthy (set, not "0");
        any other value must match exactly. ``optional_keys`` are fetched and
        returned in ``tags`` without filtering.
        """
        required = required or {}
        keys = sorted(set(required) | set(optional_keys))
        fmt = "\t".join(["#{session_name}"] + ["#{" + key + "}" for key in keys])
        result = self._run_tmux("list-sessions", "-F", fmt)
        if not self._check(result, "list-sessions", allow_missing=True):
            return []

        rows = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            name = parts[0].strip()
            if not name:
                continue
            tags = {
                key: parts[i + 1].strip() if i + 1 < len(parts) else ""
                for i, key in enumerate(keys)
            }
            if self._matches(tags, required):
                rows.append(TaggedSession(name=name, tags=tags))
        return rows

    @staticmethod
    def _matches(tags: dict[str, str], required: dict[str, str]) -> bool:
        for key, want in required.items():
            value = tags.get(key, "")
            if want == "":
                if not is_truthy_tag(value):
                    return False
            elif value != want:
                return False
        return True

    def capture_pane_tail(self, session_name: str, lines: int = 50) -> Optional[str]:
        """
        Capture the last ``lines`` lines of a session's active pane.

        Returns:
            Captured text with trailing whitespace trimmed, or None on any failure
        """
        if not session_name or lines <= 0:
            return None
        # "=name:" forces an exact session match while targeting the active pane
        try:
            result = self._run_tmux("capture-pane", "-p", "-t", f"={session_name}:", "-S", f"-{lines}")
        except TmuxError as e:
            logger.warning(f"Failed to capture pane for {session_name}: {e}")
            return None
        if result.returncode != 0:
            logger.debug(f"capture-pane failed for {session_name}: {result.stderr.strip()}")
            return None
        return result.stdout.rstrip(" \t\r\n")

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    def send_keys(self, session_name: str, text: str, press_enter: bool = False):
        """
        Type ``text`` into a session, optionally followed by Enter.

        Enter goes out as a separate keystroke after a settle delay so TUIs
        that detect bursts as pastes still treat it as a submit.
        """
        result = self._run_tmux("send-keys", "-t", session_name, "-l", "--", text)
        self._check(result, "send-keys")
        if press_enter:
            time.sleep(self.send_keys_settle_seconds)
            result = self._run_tmux("send-keys", "-t", session_name, "Enter")
            self._check(result, "send-keys")
        logger.info(f"Sent input to {session_name}: {text[:50]}...")

    def send_interrupt(self, session_name: str):
        """Send Ctrl-C to a session."""
        result = self._run_tmux("send-keys", "-t", session_name, "C-c")
        self._check(result, "send-keys")
        logger.info(f"Sent interrupt to {session_name}")

    def kill_session(self, session_name: str):
        """Kill a tmux session. A session that is already gone counts as killed."""
        if not session_name:
            return
        result = self._run_tmux("kill-session", "-t", session_name)
        if self._check(result, "kill-session", allow_missing=True):
            logger.info(f"Killed session {session_name}")
        else:
            logger.info(f"Session {session_name} already gone")

    def resolve_agent_id(self, agent_id: str) -> str:
        """
        Map ``workspace_id:tab_id`` to the session carrying those tags.

        Raises:
            InvalidAgentIdError: malformed agent id
            AgentNotFoundError: no session carries the tags
        """
        workspace_id, tab_id = parse_agent_id(agent_id)
        matches = self.sessions_with_tags({TAG_WORKSPACE: workspace_id, TAG_TAB: tab_id})
        if not matches:
            raise AgentNotFoundError(
                f"no session found for agent {agent_id}",
                details={"agent_id": agent_id},
            )
        if len(matches) > 1:
            logger.warning(f"Agent {agent_id} matches {len(matches)} sessions, using {matches[0].name}")
        return matches[0].name
