"""Configuration loading and default paths."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.local/share/agentmux"
DEFAULT_CONFIG_PATH = "~/.config/agentmux/config.yaml"


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path or os.environ.get("AGENTMUX_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()

    if not path.exists():
        logger.debug(f"Config file not found: {path}, using defaults")
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: expected a mapping, got {type(data).__name__}")
        return {}
    return data


def state_dir(config: Optional[dict] = None) -> Path:
    """Directory holding the job store, idempotency store and lock files."""
    config = config or {}
    raw = os.environ.get("AGENTMUX_HOME") or config.get("paths", {}).get("state_dir", DEFAULT_STATE_DIR)
    path = Path(raw).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def workspaces_dir(config: Optional[dict] = None) -> Path:
    """Root of the workspace metadata records."""
    config = config or {}
    raw = config.get("paths", {}).get("workspaces_dir")
    if raw:
        return Path(raw).expanduser()
    return state_dir(config) / "workspaces-metadata"


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure root logging for CLI invocations and detached workers."""
    handlers = None
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file)]
    logging.basicConfig(
        level=logging.DEBUG if verbose else (logging.INFO if log_file else logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
