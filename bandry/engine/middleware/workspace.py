"""Per-task workspace allocation.

Layout under the configured workspaces directory:

    task_{task_id}/
        input/     user-provided files
        staging/   intermediate files
        output/    deliverables
"""
from __future__ import annotations

import logging
import re
import shutil
import time
from pathlib import Path

from ..errors import OrchestrationError
from ..models import MiddlewareContext
from .base import Middleware

logger = logging.getLogger(__name__)

WORKSPACE_SUBDIRS = ("input", "staging", "output")
_TASK_ID_RE = re.compile(r"[A-Za-z0-9_.-]+")


class WorkspaceMiddleware(Middleware):
    name = "workspace"

    def __init__(self, workspaces_dir: str | Path) -> None:
        self._base = Path(workspaces_dir).expanduser()

    def workspace_for(self, task_id: str) -> Path:
        """Directory for *task_id*; ids that could leave the base are rejected."""
        if not _TASK_ID_RE.fullmatch(task_id or ""):
            raise OrchestrationError(f"Invalid task id for workspace: {task_id!r}")
        return self._base / f"task_{task_id}"

    async def before_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        workspace = self.workspace_for(ctx.task_id)
        try:
            for subdir in WORKSPACE_SUBDIRS:
                (workspace / subdir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OrchestrationError(
                f"Failed to create workspace structure at {workspace}: {exc}"
            ) from exc

        logger.debug("Workspace ready task=%s path=%s", ctx.task_id[:8], workspace)
        return ctx.evolve(workspace_path=str(workspace)).with_metadata(
            workspace_created=True,
            workspace_structure={
                subdir: str(workspace / subdir) for subdir in WORKSPACE_SUBDIRS
            },
        )

    def cleanup_old_workspaces(self, max_age_seconds: float) -> int:
        """Delete task workspaces not modified within *max_age_seconds*.

        Not called by the pipeline; intended for periodic housekeeping.
        Returns the number of workspaces removed.
        """
        if not self._base.is_dir():
            return 0
        now = time.time()
        cleaned = 0
        for entry in self._base.iterdir():
            if not entry.is_dir() or not entry.name.startswith("task_"):
                continue
            try:
                age = now - entry.stat().st_mtime
                if age > max_age_seconds:
                    shutil.rmtree(entry)
                    cleaned += 1
            except OSError:
                logger.warning("Failed to remove workspace %s", entry, exc_info=True)
        if cleaned:
            logger.info("Removed %d stale workspaces from %s", cleaned, self._base)
        return cleaned
