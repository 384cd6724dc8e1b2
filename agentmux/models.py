"""Data models for agentmux."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import InvalidAgentIdError

# tmux user options set on sessions by the launcher
TAG_OWNER = "@amux"
TAG_WORKSPACE = "@amux_workspace"
TAG_TAB = "@amux_tab"
TAG_TYPE = "@amux_type"

SESSION_PREFIX = "amux-"


class SessionType(Enum):
    """Kind of process hosted by a tmux session."""
    AGENT = "agent"
    SHELL = "shell"


class SendJobStatus(Enum):
    """SendJob lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (SendJobStatus.COMPLETED, SendJobStatus.FAILED, SendJobStatus.CANCELED)

    @property
    def is_queued(self) -> bool:
        return self in (SendJobStatus.PENDING, SendJobStatus.RUNNING)


# Allowed status transitions. Same-status writes are accepted as no-ops.
_TRANSITIONS = {
    SendJobStatus.PENDING: {
        SendJobStatus.RUNNING,
        SendJobStatus.COMPLETED,
        SendJobStatus.FAILED,
        SendJobStatus.CANCELED,
    },
    SendJobStatus.RUNNING: {SendJobStatus.COMPLETED, SendJobStatus.FAILED},
    SendJobStatus.COMPLETED: set(),
    SendJobStatus.FAILED: set(),
    SendJobStatus.CANCELED: set(),
}


def can_transition(current: SendJobStatus, target: SendJobStatus) -> bool:
    """Return True if a job in ``current`` may move to ``target``."""
    if current == target:
        return True
    return target in _TRANSITIONS[current]


def allowed_sources(target: SendJobStatus) -> list[SendJobStatus]:
    """Statuses from which ``target`` is reachable (used for conditional UPDATEs)."""
    return [status for status in SendJobStatus if status != target and target in _TRANSITIONS[status]]


@dataclass
class SendJob:
    """Durable record of a "send text to session" request."""
    id: str
    session_name: str
    status: SendJobStatus = SendJobStatus.PENDING
    agent_id: Optional[str] = None
    command: str = "agent.send"
    error: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0
    completed_at: Optional[float] = None
    sequence: int = 0

    def to_dict(self) -> dict:
        data = {
            "job_id": self.id,
            "status": self.status.value,
            "session_name": self.session_name,
            "created_at": int(self.created_at),
            "updated_at": int(self.updated_at),
        }
        if self.agent_id:
            data["agent_id"] = self.agent_id
        if self.error:
            data["error"] = self.error
        if self.completed_at is not None:
            data["completed_at"] = int(self.completed_at)
        return data


@dataclass
class SessionState:
    """Live existence answer for one tmux session."""
    exists: bool = False
    has_live_pane: bool = False


@dataclass
class SessionActivity:
    """An agent session as seen by the activity listing or tag discovery."""
    name: str
    workspace_id: str = ""
    tab_id: str = ""
    type: str = ""
    tagged: bool = False
    last_activity: int = 0

    @property
    def agent_id(self) -> str:
        return format_agent_id(self.workspace_id, self.tab_id)

    def to_dict(self) -> dict:
        data = {"session_name": self.name}
        if self.agent_id:
            data["agent_id"] = self.agent_id
        data.update(workspace_id=self.workspace_id, tab_id=self.tab_id, type=self.type)
        return data


@dataclass
class TaggedSession:
    """A session name plus the tag values requested from tmux."""
    name: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """Outcome of a pane capture, after exit disambiguation."""
    session_name: str
    content: str
    lines: int
    status: str  # "captured" or "session_exited"
    latest_line: str = ""
    summary: str = ""
    needs_input: bool = False
    input_hint: str = ""
    session_exited: bool = False

    def to_dict(self) -> dict:
        data = {
            "session_name": self.session_name,
            "content": self.content,
            "lines": self.lines,
            "status": self.status,
        }
        if self.latest_line:
            data["latest_line"] = self.latest_line
        if self.summary:
            data["summary"] = self.summary
        if self.needs_input:
            data["needs_input"] = True
            data["input_hint"] = self.input_hint
        if self.session_exited:
            data["session_exited"] = True
        return data


@dataclass
class WaitResponse:
    """What a session did after a send, observed by polling its pane."""
    status: str  # idle, needs_input, session_exited, timed_out
    latest_line: str = ""
    summary: str = ""
    needs_input: bool = False
    input_hint: str = ""
    idle_seconds: float = 0.0
    changed: bool = False

    @property
    def timed_out(self) -> bool:
        return self.status == "timed_out"

    @property
    def session_exited(self) -> bool:
        return self.status == "session_exited"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "latest_line": self.latest_line,
            "summary": self.summary,
            "needs_input": self.needs_input,
            "input_hint": self.input_hint,
            "idle_seconds": round(self.idle_seconds, 3),
            "changed": self.changed,
            "timed_out": self.timed_out,
            "session_exited": self.session_exited,
        }


@dataclass
class SendResult:
    """Result of an agent send in any execution mode."""
    session_name: str
    job_id: str
    status: str
    agent_id: Optional[str] = None
    sent: bool = False
    delivered: bool = False
    error: str = ""
    response: Optional[WaitResponse] = None

    def to_dict(self) -> dict:
        data = {
            "session_name": self.session_name,
            "job_id": self.job_id,
            "status": self.status,
            "sent": self.sent,
            "delivered": self.delivered,
        }
        if self.agent_id:
            data["agent_id"] = self.agent_id
        if self.error:
            data["error"] = self.error
        if self.response is not None:
            data["response"] = self.response.to_dict()
        return data


@dataclass
class StopResult:
    """Sessions stopped by a single or batch stop."""
    stopped: list[str] = field(default_factory=list)
    agent_id: Optional[str] = None
    stopped_agent_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"stopped": self.stopped}
        if self.agent_id:
            data["agent_id"] = self.agent_id
        if self.stopped_agent_ids:
            data["stopped_agent_ids"] = self.stopped_agent_ids
        return data


def format_agent_id(workspace_id: str, tab_id: str) -> str:
    """Compose an agent id, or "" when either part is missing."""
    workspace_id = (workspace_id or "").strip()
    tab_id = (tab_id or "").strip()
    if not workspace_id or not tab_id:
        return ""
    return f"{workspace_id}:{tab_id}"


def parse_agent_id(agent_id: str) -> tuple[str, str]:
    """
    Split ``workspace_id:tab_id``.

    Raises:
        InvalidAgentIdError: if either part is empty or the separator is missing
    """
    raw = (agent_id or "").strip()
    workspace_id, sep, tab_id = raw.partition(":")
    workspace_id = workspace_id.strip()
    tab_id = tab_id.strip()
    if not sep or not workspace_id or not tab_id or ":" in tab_id:
        raise InvalidAgentIdError(
            f"agent id must be <workspace_id>:<tab_id>, got {agent_id!r}",
            details={"agent_id": agent_id},
        )
    return workspace_id, tab_id
