"""Task, project and connection models plus session/slug naming."""

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

SLUG_MAX_LENGTH = 20
SESSION_PREFIX = "task-"
SESSION_SEPARATOR = "--"
BRANCH_PREFIX = "task/"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SESSION_TASK_ID = re.compile(r"^task-([^-]+)")
_UNSAFE_SESSION_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


class TaskStatus(str, Enum):
    """Lifecycle states, in board order."""
    BACKLOG = "backlog"
    PLANNING = "planning"
    RUNNING = "running"
    REVIEW = "review"
    DONE = "done"


# Ordered list of columns; transitions only ever move one step along it
COLUMNS = [
    TaskStatus.BACKLOG,
    TaskStatus.PLANNING,
    TaskStatus.RUNNING,
    TaskStatus.REVIEW,
    TaskStatus.DONE,
]


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def slugify(title: str) -> str:
    """Filesystem and branch safe short form of a task title.

    Used for the worktree directory, the branch name and the session name;
    all three must agree or worktrees get orphaned.
    """
    slug = _NON_ALNUM.sub("-", title.lower()).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or "task"


def branch_name_for(slug: str) -> str:
    return f"{BRANCH_PREFIX}{slug}"


class Task(BaseModel):
    """A unit of orchestrated work."""

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.BACKLOG
    agent: str
    project_id: str

    session_name: Optional[str] = None
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None

    # Owned by the board/canvas layer, passed through unchanged
    canvas_x: float = 0.0
    canvas_y: float = 0.0
    html_content: Optional[str] = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @classmethod
    def create(
        cls,
        title: str,
        agent: str,
        project_id: str,
        description: Optional[str] = None,
    ) -> "Task":
        """New backlog task with no session, worktree or branch."""
        now = _now()
        return cls(
            title=title,
            description=description or None,
            agent=agent,
            project_id=project_id,
            created_at=now,
            updated_at=now,
        )

    @property
    def slug(self) -> str:
        return slugify(self.title)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def column_index(self) -> int:
        return COLUMNS.index(TaskStatus(self.status))

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()

    def touch(self) -> None:
        """Bump the last-update timestamp."""
        self.updated_at = _now()


class Project(BaseModel):
    """A repository registered as an orchestration root."""

    id: str = Field(default_factory=_new_id)
    name: str
    path: str
    github_url: Optional[str] = None
    default_agent: Optional[str] = None
    last_opened: datetime = Field(default_factory=_now)

    @classmethod
    def create(cls, name: str, path: str) -> "Project":
        return cls(name=name, path=path)

    @field_serializer("last_opened")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()


class TaskConnection(BaseModel):
    """Labeled directed edge between two tasks (owned by the canvas layer)."""

    id: str = Field(default_factory=_new_id)
    from_task_id: str
    to_task_id: str
    label: str = ""

    @classmethod
    def create(cls, from_task_id: str, to_task_id: str, label: str = "") -> "TaskConnection":
        return cls(from_task_id=from_task_id, to_task_id=to_task_id, label=label)


def generate_session_name(task: Task, project_name: str) -> str:
    """task-<id8>--<project>--<slug>; the id prefix keeps same-titled tasks apart."""
    return (
        f"{SESSION_PREFIX}{task.short_id}"
        f"{SESSION_SEPARATOR}{_UNSAFE_SESSION_CHARS.sub('-', project_name)}"
        f"{SESSION_SEPARATOR}{task.slug}"
    )


def parse_task_id(session_name: str) -> Optional[str]:
    """Short task id embedded in a session name, if any."""
    match = _SESSION_TASK_ID.match(session_name)
    return match.group(1) if match else None


def parse_project_name(session_name: str) -> Optional[str]:
    parts = session_name.split(SESSION_SEPARATOR)
    return parts[1] if len(parts) > 1 else None
