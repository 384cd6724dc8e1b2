"""Server entry point - wires components and runs the HTTP API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn

from .server import create_app
from .services import Services

logger = logging.getLogger(__name__)


class AgentmuxServer:
    """Long-lived host for agentmux operations."""

    def __init__(
        self,
        config: dict,
        host: Optional[str] = None,
        port: Optional[int] = None,
        worker_args: Optional[list[str]] = None,
    ):
        """
        Args:
            config: Full config dict
            host: Bind address override
            port: Port override
            worker_args: Global CLI arguments for detached send workers
                (e.g. the ``--config`` the server was started with)
        """
        self.config = config

        # Server config
        self.host = host or config.get("server", {}).get("host", "127.0.0.1")
        self.port = port or config.get("server", {}).get("port", 8420)

        self.services = Services.from_config(config, worker_args=worker_args)
        self.app = create_app(self.services, config=config, lifespan=self._lifespan)

    @asynccontextmanager
    async def _lifespan(self, app):
        logger.info(f"agentmux server listening on http://{self.host}:{self.port}")
        try:
            yield
        finally:
            logger.info("Stopping agentmux server...")
            self.services.close()

    def run(self) -> int:
        uvicorn.run(self.app, host=self.host, port=self.port, log_level="info")
        return 0


def run_server(
    config: dict,
    host: Optional[str] = None,
    port: Optional[int] = None,
    worker_args: Optional[list[str]] = None,
) -> int:
    """Run the API server until interrupted."""
    return AgentmuxServer(config, host=host, port=port, worker_args=worker_args).run()
