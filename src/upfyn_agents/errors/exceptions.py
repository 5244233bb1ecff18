"""User-visible failures of lifecycle transitions.

Each of these aborts the triggering transition before anything is persisted,
so the task row is left exactly as it was.
"""

from pathlib import Path
from typing import Optional


class UpfynError(Exception):
    """Base class for all orchestration errors."""


class SpawnFailure(UpfynError):
    """A session backend failed to launch the agent process."""

    def __init__(self, session_name: str, backend: str, diagnostic: str = ""):
        self.session_name = session_name
        self.backend = backend
        self.diagnostic = diagnostic.strip()
        message = f"Failed to spawn session '{session_name}' via {backend}"
        if self.diagnostic:
            message += f": {self.diagnostic}"
        super().__init__(message)


class WorktreeCreationFailure(UpfynError):
    """git refused to create the task worktree."""

    def __init__(self, path: Path, diagnostic: str = ""):
        self.path = Path(path)
        self.diagnostic = diagnostic.strip()
        message = f"Failed to create worktree at {self.path}"
        if self.diagnostic:
            message += f": {self.diagnostic}"
        super().__init__(message)


class PrCreationFailure(UpfynError):
    """Pushing the branch or opening the pull request failed."""

    def __init__(self, step: str, diagnostic: str = ""):
        self.step = step
        self.diagnostic = diagnostic.strip()
        message = f"Pull request {step} failed"
        if self.diagnostic:
            message += f": {self.diagnostic}"
        super().__init__(message)


class InvalidTransition(UpfynError):
    """The requested move is not one of the allowed single-step edges."""

    def __init__(self, task_id: str, source: str, target: Optional[str] = None):
        self.task_id = task_id
        self.source = source
        self.target = target
        if target:
            message = f"Cannot move task {task_id[:8]} from {source} to {target}"
        else:
            message = f"Task {task_id[:8]} cannot move from {source}"
        super().__init__(message)


class TaskNotFound(UpfynError):
    """No task row with this id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")
