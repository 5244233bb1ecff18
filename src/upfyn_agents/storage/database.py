"""SQLite persistence for tasks, connections and registered projects.

Each repository gets its own database under ``<config dir>/projects/``, named
by a hash of its path; the list of known projects lives in
``<config dir>/index.db``. Read helpers log and return empty results on
``sqlite3.Error``; writes raise so the caller can report them.
"""

import contextlib
import hashlib
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

from ..core.task import Project, Task, TaskConnection

logger = logging.getLogger(__name__)

PROJECTS_DIR = "projects"
GLOBAL_DB_NAME = "index.db"

PROJECT_SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'backlog',
    agent TEXT NOT NULL,
    project_id TEXT NOT NULL,
    session_name TEXT,
    worktree_path TEXT,
    branch_name TEXT,
    pr_number INTEGER,
    pr_url TEXT,
    canvas_x REAL DEFAULT 0.0,
    canvas_y REAL DEFAULT 0.0,
    html_content TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);

CREATE TABLE IF NOT EXISTS task_connections (
    id TEXT PRIMARY KEY,
    from_task_id TEXT NOT NULL,
    to_task_id TEXT NOT NULL,
    label TEXT DEFAULT '',
    FOREIGN KEY (from_task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY (to_task_id) REFERENCES tasks(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_conn_from ON task_connections(from_task_id);
CREATE INDEX IF NOT EXISTS idx_conn_to ON task_connections(to_task_id);
"""

GLOBAL_SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    github_url TEXT,
    default_agent TEXT,
    last_opened TEXT NOT NULL
);
"""

TASK_COLUMNS = (
    "id", "title", "description", "status", "agent", "project_id",
    "session_name", "worktree_path", "branch_name", "pr_number", "pr_url",
    "canvas_x", "canvas_y", "html_content", "created_at", "updated_at",
)


def hash_path(path: str) -> str:
    """Stable short hash of a project path, used as its database file name."""
    return hashlib.md5(path.encode("utf-8")).hexdigest()[:16]


def project_db_path(config_dir: Path, project_path: Path) -> Path:
    return Path(config_dir) / PROJECTS_DIR / f"{hash_path(str(project_path))}.db"


def global_db_path(config_dir: Path) -> Path:
    return Path(config_dir) / GLOBAL_DB_NAME


def get_connection(db_path: Path, schema: str) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(schema)
    return conn


class _Database:
    schema = ""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.conn = get_connection(self.db_path, self.schema)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @contextlib.contextmanager
    def _write(self):
        """Transaction that commits on success and rolls back on error."""
        try:
            yield self.conn
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise


def _row_to_task(row: sqlite3.Row) -> Task:
    data = dict(row)
    data["canvas_x"] = data.get("canvas_x") or 0.0
    data["canvas_y"] = data.get("canvas_y") or 0.0
    return Task(**data)


def _task_params(task: Task) -> dict:
    data = task.model_dump()
    return {column: data[column] for column in TASK_COLUMNS}


class ProjectDatabase(_Database):
    """Tasks and connections of one repository."""

    schema = PROJECT_SCHEMA

    # Tasks

    def insert_task(self, task: Task) -> None:
        columns = ", ".join(TASK_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in TASK_COLUMNS)
        with self._write() as conn:
            conn.execute(f"INSERT INTO tasks ({columns}) VALUES ({placeholders})", _task_params(task))

    def update_task(self, task: Task) -> None:
        """Full-row replace keyed by id (created_at and project_id are immutable)."""
        assignments = ", ".join(
            f"{c} = :{c}" for c in TASK_COLUMNS if c not in ("id", "project_id", "created_at")
        )
        with self._write() as conn:
            conn.execute(f"UPDATE tasks SET {assignments} WHERE id = :id", _task_params(task))

    def update_task_position(self, task_id: str, x: float, y: float) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE tasks SET canvas_x = ?, canvas_y = ? WHERE id = ?",
                (x, y, task_id),
            )

    def delete_task(self, task_id: str) -> None:
        """Delete a task and every connection touching it."""
        with self._write() as conn:
            conn.execute(
                "DELETE FROM task_connections WHERE from_task_id = ? OR to_task_id = ?",
                (task_id, task_id),
            )
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    def get_task(self, task_id: str) -> Optional[Task]:
        try:
            row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to read task {task_id}: {e}")
            return None
        return _row_to_task(row) if row else None

    def find_tasks_by_prefix(self, prefix: str) -> List[Task]:
        """Tasks whose id starts with `prefix` (short ids shown in the CLI)."""
        try:
            rows = self.conn.execute(
                "SELECT * FROM tasks WHERE id LIKE ? ORDER BY created_at",
                (f"{prefix}%",),
            ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to look up tasks by prefix {prefix}: {e}")
            return []
        return [_row_to_task(row) for row in rows]

    def get_all_tasks(self) -> List[Task]:
        try:
            rows = self.conn.execute("SELECT * FROM tasks ORDER BY created_at").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read tasks: {e}")
            return []
        return [_row_to_task(row) for row in rows]

    def get_tasks_by_status(self, status: str) -> List[Task]:
        try:
            rows = self.conn.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY created_at",
                (str(getattr(status, "value", status)),),
            ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read {status} tasks: {e}")
            return []
        return [_row_to_task(row) for row in rows]

    # Connections

    def insert_connection(self, connection: TaskConnection) -> None:
        with self._write() as conn:
            conn.execute(
                "INSERT INTO task_connections (id, from_task_id, to_task_id, label) "
                "VALUES (:id, :from_task_id, :to_task_id, :label)",
                connection.model_dump(),
            )

    def delete_connection(self, connection_id: str) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM task_connections WHERE id = ?", (connection_id,))

    def get_all_connections(self) -> List[TaskConnection]:
        try:
            rows = self.conn.execute("SELECT * FROM task_connections").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read connections: {e}")
            return []
        return [TaskConnection(**dict(row)) for row in rows]

    def get_connections_for_task(self, task_id: str) -> List[TaskConnection]:
        try:
            rows = self.conn.execute(
                "SELECT * FROM task_connections WHERE from_task_id = ? OR to_task_id = ?",
                (task_id, task_id),
            ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read connections for {task_id}: {e}")
            return []
        return [TaskConnection(**dict(row)) for row in rows]


class GlobalDatabase(_Database):
    """Index of every project opened on this machine."""

    schema = GLOBAL_SCHEMA

    def upsert_project(self, project: Project) -> Project:
        """Insert or refresh a project keyed by path; returns the stored row."""
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO projects (id, name, path, github_url, default_agent, last_opened)
                VALUES (:id, :name, :path, :github_url, :default_agent, :last_opened)
                ON CONFLICT(path) DO UPDATE SET
                    name = excluded.name,
                    github_url = excluded.github_url,
                    default_agent = excluded.default_agent,
                    last_opened = excluded.last_opened
                """,
                project.model_dump(),
            )
        stored = self.get_project_by_path(project.path)
        return stored or project

    def get_project_by_path(self, path: str) -> Optional[Project]:
        try:
            row = self.conn.execute("SELECT * FROM projects WHERE path = ?", (path,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to read project {path}: {e}")
            return None
        return Project(**dict(row)) if row else None

    def get_all_projects(self) -> List[Project]:
        try:
            rows = self.conn.execute("SELECT * FROM projects ORDER BY last_opened DESC").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read projects: {e}")
            return []
        return [Project(**dict(row)) for row in rows]


def open_project_db(config_dir: Path, project_path: Path) -> ProjectDatabase:
    return ProjectDatabase(project_db_path(config_dir, project_path))


def open_global_db(config_dir: Path) -> GlobalDatabase:
    return GlobalDatabase(global_db_path(config_dir))
