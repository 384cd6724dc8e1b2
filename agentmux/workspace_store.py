"""Workspace metadata records and tab registry sync after session termination."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional

from .lock_manager import file_lock

logger = logging.getLogger(__name__)

RECORD_FILENAME = "workspace.json"


class WorkspaceStore:
    """
    JSON workspace records under ``<root>/<workspace_id>/workspace.json``.

    Updates are read-modify-write under an exclusive per-record lock
    (``<root>/<workspace_id>.lock``); unknown keys are carried through verbatim.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def record_path(self, workspace_id: str) -> Path:
        return self.root / workspace_id / RECORD_FILENAME

    def lock_path(self, workspace_id: str) -> Path:
        return self.root / f"{workspace_id}.lock"

    def list(self) -> list[str]:
        """Workspace ids that have a record on disk."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_dir() and (entry / RECORD_FILENAME).is_file()
        )

    def load(self, workspace_id: str) -> dict:
        """
        Read one record.

        Raises:
            OSError: record missing or unreadable
            ValueError: record is not a JSON object
        """
        with open(self.record_path(workspace_id)) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"workspace record {workspace_id} is not an object")
        return data

    def save(self, workspace_id: str, record: dict):
        """Write a record atomically (temp file in the same directory, then rename)."""
        path = self.record_path(workspace_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".workspace-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def update(self, workspace_id: str, mutator: Callable[[dict], bool]) -> bool:
        """
        Apply ``mutator`` to a record under its lock.

        The record is written back only when ``mutator`` returns True.

        Returns:
            Whether the record changed
        """
        with file_lock(self.lock_path(workspace_id)):
            record = self.load(workspace_id)
            if not mutator(record):
                return False
            self.save(workspace_id, record)
        return True


def remove_tab_for_session(store: WorkspaceStore, session_name: str) -> Optional[str]:
    """
    Drop the open tab backed by ``session_name`` from the first workspace holding it.

    Failures are logged and skipped; a stopped session must not turn into a
    failed stop because its metadata could not be cleaned up.

    Returns:
        The workspace id that was changed, or None
    """
    def drop_tab(record: dict) -> bool:
        tabs = record.get("open_tabs") or []
        kept = [tab for tab in tabs if not (isinstance(tab, dict) and tab.get("session_name") == session_name)]
        if len(kept) == len(tabs):
            return False
        record["open_tabs"] = kept
        return True

    try:
        workspace_ids = store.list()
    except OSError as e:
        logger.warning(f"Could not list workspaces under {store.root}: {e}")
        return None

    for workspace_id in workspace_ids:
        try:
            changed = store.update(workspace_id, drop_tab)
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping workspace {workspace_id} while removing tab for {session_name}: {e}")
            continue
        if changed:
            logger.info(f"Removed tab for {session_name} from workspace {workspace_id}")
            return workspace_id
    return None
