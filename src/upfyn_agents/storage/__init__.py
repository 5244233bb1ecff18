"""SQLite storage for tasks and projects."""

from .database import GlobalDatabase, ProjectDatabase, open_global_db, open_project_db

__all__ = ["GlobalDatabase", "ProjectDatabase", "open_global_db", "open_project_db"]
