"""JSON response envelope shared by the CLI and the HTTP API."""

import json
from datetime import datetime, timezone
from typing import Any

from . import __version__
from .errors import AgentmuxError


def _meta() -> dict:
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "agentmux_version": __version__,
    }


def success(data: Any) -> dict:
    return {"ok": True, "data": data, "error": None, "meta": _meta()}


def failure(error: AgentmuxError) -> dict:
    return {
        "ok": False,
        "data": None,
        "error": {
            "code": error.code,
            "message": error.message,
            "details": error.details,
        },
        "meta": _meta(),
    }


def render(envelope: dict) -> bytes:
    """Serialize once; these bytes are what gets written and stored for replay."""
    return (json.dumps(envelope, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
