"""Component wiring shared by CLI invocations, detached workers and the server."""

import logging
from dataclasses import dataclass
from typing import Optional

from .agent_send import AgentSender
from .config import state_dir, workspaces_dir
from .idempotency import IdempotencyStore
from .lifecycle import SessionLifecycleController
from .pane_capture import PaneCaptureService
from .send_jobs import SendJobStore
from .tmux_controller import TmuxController
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: dict
    tmux: TmuxController
    jobs: SendJobStore
    idempotency: IdempotencyStore
    capture: PaneCaptureService
    sender: AgentSender
    lifecycle: SessionLifecycleController

    @classmethod
    def from_config(cls, config: Optional[dict] = None, worker_args: Optional[list[str]] = None) -> "Services":
        """
        Build every component from one config dict.

        Detached workers always get the resolved state directory on their
        argv, so they open the same job store whatever config they load.
        """
        config = config or {}
        home = state_dir(config)
        worker_args = [*(worker_args or []), "--state-dir", str(home)]
        tmux = TmuxController(config)
        jobs = SendJobStore(str(home / "send_jobs.db"), config=config)
        logger.debug(f"Using state directory {home}")
        return cls(
            config=config,
            tmux=tmux,
            jobs=jobs,
            idempotency=IdempotencyStore(str(home / "idempotency.db")),
            capture=PaneCaptureService(tmux, config),
            sender=AgentSender(tmux, jobs, config, worker_args=worker_args),
            lifecycle=SessionLifecycleController(tmux, WorkspaceStore(workspaces_dir(config)), config),
        )

    def close(self):
        self.jobs.close()
        self.idempotency.close()
