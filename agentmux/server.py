"""FastAPI server exposing agentmux operations to a long-lived supervisor."""

import logging
from typing import Callable, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from . import __version__, envelope
from .errors import (
    AgentmuxError,
    ConfirmationRequiredError,
    InvalidInputError,
    JobFailedError,
    JobNotFoundError,
    JobWaitTimeoutError,
    NotFoundError,
    TmuxError,
)
from .services import Services

logger = logging.getLogger(__name__)


class SendRequest(BaseModel):
    """Request to send text to a session."""
    text: str
    enter: bool = False
    agent_id: Optional[str] = None
    asynchronous: bool = False
    wait: bool = False
    wait_timeout: Optional[float] = None
    idle_threshold: Optional[float] = None


class StopRequest(BaseModel):
    """Request to stop a single session."""
    graceful: bool = True
    grace_period: Optional[float] = None


class StopAllRequest(BaseModel):
    """Request to stop every agent session."""
    confirm: bool = False
    graceful: bool = True
    grace_period: Optional[float] = None


class JobWaitRequest(BaseModel):
    """Request to block until a job is terminal."""
    timeout: float = 30.0
    interval: float = 0.2


def http_status(error: AgentmuxError) -> int:
    """HTTP status for a core error."""
    if isinstance(error, ConfirmationRequiredError):
        return 409
    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, JobWaitTimeoutError):
        return 504
    if isinstance(error, TmuxError):
        return 502
    return 500


def create_app(services: Services, config: Optional[dict] = None, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Wired agentmux components
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="agentmux",
        description="Drive agent sessions in tmux with idempotent, durable send jobs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config or {}
    app.state.services = services

    def respond(
        action: Callable[[], dict],
        command: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Response:
        key = (idempotency_key or "").strip()
        # HTTP outcomes are stored apart from CLI ones: the status column holds an HTTP code here
        namespace = f"http:{command}" if command else None
        if key and namespace:
            record = services.idempotency.lookup(namespace, key)
            if record is not None:
                logger.info(f"Replaying {command} for idempotency key {key}")
                return Response(content=record.envelope, status_code=record.exit_code, media_type="application/json")

        cacheable = True
        try:
            result = envelope.success(action())
            status_code = 200
        except JobFailedError as e:
            result = envelope.success(e.job.to_dict())
            status_code = 200
        except AgentmuxError as e:
            result = envelope.failure(e)
            status_code = http_status(e)
            cacheable = e.cacheable
            logger.warning(f"{command or 'request'} failed: {e.code}: {e.message}")

        payload = envelope.render(result)
        if key and namespace and cacheable:
            stored = services.idempotency.record(namespace, key, status_code, payload)
            if stored is not None:
                payload, status_code = stored.envelope, stored.exit_code
        return Response(content=payload, status_code=status_code, media_type="application/json")

    @app.get("/health")
    def health_check():
        """Liveness plus whether tmux answers."""
        try:
            sessions = len(services.tmux.list_sessions())
            tmux_ok = True
        except TmuxError as e:
            logger.warning(f"Health check: tmux unavailable: {e}")
            sessions = 0
            tmux_ok = False
        return JSONResponse({"status": "healthy" if tmux_ok else "degraded", "tmux": tmux_ok, "sessions": sessions})

    @app.get("/agents")
    def list_agents(workspace_id: Optional[str] = None):
        """Running agent sessions, most recently active first."""
        return respond(lambda: [s.to_dict() for s in services.lifecycle.list_agents(workspace_id)])

    @app.get("/sessions/{session_name}/capture")
    def capture_session(session_name: str, lines: int = 50):
        """Capture the tail of a session's pane."""
        return respond(lambda: services.capture.capture(session_name, lines).to_dict())

    @app.post("/sessions/{session_name}/send")
    def send_to_session(
        session_name: str,
        request: SendRequest,
        idempotency_key: Optional[str] = Header(None),
    ):
        """Send text to a session (or to ``agent_id`` when given)."""
        def action():
            return services.sender.send(
                request.text,
                session_name=None if request.agent_id else session_name,
                agent_id=request.agent_id,
                enter=request.enter,
                async_=request.asynchronous,
                wait=request.wait,
                wait_timeout=request.wait_timeout,
                idle_threshold=request.idle_threshold,
            ).to_dict()
        return respond(action, "agent.send", idempotency_key)

    @app.post("/sessions/{session_name}/stop")
    def stop_session(
        session_name: str,
        request: Optional[StopRequest] = None,
        idempotency_key: Optional[str] = Header(None),
    ):
        """Stop one session."""
        request = request or StopRequest()
        return respond(
            lambda: services.lifecycle.stop(
                session_name=session_name, graceful=request.graceful, grace_period=request.grace_period,
            ).to_dict(),
            "agent.stop",
            idempotency_key,
        )

    @app.post("/agents/stop-all")
    def stop_all_agents(
        request: Optional[StopAllRequest] = None,
        idempotency_key: Optional[str] = Header(None),
    ):
        """Stop every agent session; requires ``confirm``."""
        request = request or StopAllRequest()
        return respond(
            lambda: services.lifecycle.stop_all(
                confirm=request.confirm, graceful=request.graceful, grace_period=request.grace_period,
            ).to_dict(),
            "agent.stop.all",
            idempotency_key,
        )

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        """Get a send job."""
        def action():
            job = services.jobs.get(job_id)
            if job is None:
                raise JobNotFoundError("job not found", details={"job_id": job_id})
            return job.to_dict()
        return respond(action)

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str, idempotency_key: Optional[str] = Header(None)):
        """Cancel a pending send job."""
        def action():
            job, canceled = services.jobs.cancel(job_id)
            return {"job_id": job.id, "status": job.status.value, "canceled": canceled}
        return respond(action, "agent.job.cancel", idempotency_key)

    @app.post("/jobs/{job_id}/wait")
    def wait_job(job_id: str, request: Optional[JobWaitRequest] = None):
        """Block until a send job is terminal."""
        request = request or JobWaitRequest()
        return respond(
            lambda: services.jobs.wait(job_id, timeout=request.timeout, poll_interval=request.interval).to_dict()
        )

    @app.exception_handler(AgentmuxError)
    async def agentmux_error_handler(request: Request, exc: AgentmuxError):
        return Response(
            content=envelope.render(envelope.failure(exc)),
            status_code=http_status(exc),
            media_type="application/json",
        )

    return app
