"""Core models and configuration."""

from .task import COLUMNS, Project, Task, TaskConnection, TaskStatus
from .config import AppConfig, GlobalConfig, ProjectConfig, config_base_dir, load_config
from .agents import AgentDefinition, get_agent, known_agents, resolve_agent
from .pr_workflow import PullRequest, PullRequestState, PullRequestWorkflow

__all__ = [
    "COLUMNS",
    "Project",
    "Task",
    "TaskConnection",
    "TaskStatus",
    "AppConfig",
    "GlobalConfig",
    "ProjectConfig",
    "config_base_dir",
    "load_config",
    "AgentDefinition",
    "get_agent",
    "known_agents",
    "resolve_agent",
    "PullRequest",
    "PullRequestState",
    "PullRequestWorkflow",
]
