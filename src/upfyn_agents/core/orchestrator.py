"""Task lifecycle state machine.

Tasks move ``backlog -> planning -> running -> review -> done`` one step at a
time, plus the single backward edge ``review -> running``. Each transition
runs its side effects (worktree, session, PR) first and persists the new
state last, so a failed side effect leaves the stored task untouched.
Teardown after that point (killing sessions, removing worktrees) is best
effort and comes back as warnings on an otherwise successful result.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..errors.exceptions import InvalidTransition, PrCreationFailure, TaskNotFound, UpfynError
from ..session.base import SessionInfo
from ..session.manager import SessionManager
from ..session.watcher import AcceptanceWatcher
from ..storage.database import ProjectDatabase
from ..utils.rich_logging import ContextLogger
from ..workspace import git
from ..workspace.worktree_manager import WorktreeManager
from .agents import (
    PROCEED_INSTRUCTION,
    build_interactive_command,
    build_planning_prompt,
    resolve_agent,
)
from .config import AppConfig
from .pr_workflow import PullRequest, PullRequestState, PullRequestWorkflow
from .task import COLUMNS, Project, Task, TaskStatus, branch_name_for, generate_session_name

logger = logging.getLogger(__name__)

WatcherFactory = Callable[..., AcceptanceWatcher]


@dataclass
class TransitionResult:
    """Outcome of a lifecycle operation.

    ``changed`` is False when the caller still has to decide something
    (``needs_confirmation``) and nothing was touched.
    """
    task: Task
    changed: bool
    warnings: List[str] = field(default_factory=list)
    needs_confirmation: bool = False
    pr_state: Optional[PullRequestState] = None
    pr: Optional[PullRequest] = None
    watcher: Optional[AcceptanceWatcher] = None


class TaskOrchestrator:
    """Owns every mutation of task lifecycle fields for one project."""

    def __init__(
        self,
        db: ProjectDatabase,
        project: Project,
        config: AppConfig,
        sessions: SessionManager,
        worktrees: Optional[WorktreeManager] = None,
        pr_workflow: Optional[PullRequestWorkflow] = None,
        watcher_factory: WatcherFactory = AcceptanceWatcher,
    ):
        self.db = db
        self.project = project
        self.config = config
        self.sessions = sessions
        self.worktrees = worktrees or WorktreeManager()
        self.pr_workflow = pr_workflow or PullRequestWorkflow()
        self.watcher_factory = watcher_factory
        self.watchers: Dict[str, AcceptanceWatcher] = {}
        self._log = ContextLogger(logger)

    @property
    def repo_root(self) -> Path:
        return Path(self.project.path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def tasks(self) -> List[Task]:
        return self.db.get_all_tasks()

    def get_task(self, task_id: str) -> Task:
        """Look up a task by full id or unique id prefix.

        Raises:
            TaskNotFound: if nothing (or more than one task) matches
        """
        task = self.db.get_task(task_id)
        if task is not None:
            return task
        matches = self.db.find_tasks_by_prefix(task_id)
        if len(matches) == 1:
            return matches[0]
        raise TaskNotFound(task_id)

    def sessions_list(self) -> List[SessionInfo]:
        return self.sessions.list_sessions()

    def capture(self, task_id: str, lines: int = 50) -> str:
        task = self.get_task(task_id)
        if not task.session_name:
            return ""
        return self.sessions.capture_output(task.session_name, lines)

    def attach(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        if not task.session_name:
            return False
        return self.sessions.attach(task.session_name)

    def diff(self, task_id: str, stat: bool = False) -> str:
        """Diff between the base branch and the task branch.

        The base is the configured branch, or the repository's main line.
        """
        task = self.get_task(task_id)
        if not task.branch_name:
            return ""
        show = git.diff_stat if stat else git.diff_full
        base = self.config.base_branch or git.detect_main_branch(self.repo_root)
        return show(self.repo_root, base, task.branch_name)

    # ------------------------------------------------------------------
    # Task CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> Task:
        title = title.strip()
        if not title:
            raise UpfynError("Task title cannot be empty")
        task = Task.create(
            title=title,
            agent=agent or self.project.default_agent or self.config.default_agent,
            project_id=self.project.id,
            description=description,
        )
        self.db.insert_task(task)
        logger.info(f"Created task {task.short_id} '{task.title}'")
        return task

    def edit_task(
        self,
        task_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        """Change title or description. Titles are fixed once a worktree exists."""
        task = self.get_task(task_id)
        updated = task.model_copy()
        if title is not None and title.strip() != task.title:
            # The slug (worktree, branch, session) derives from the title
            if task.status != TaskStatus.BACKLOG:
                raise UpfynError(
                    f"Task {task.short_id} can only be renamed while in backlog"
                )
            updated.title = title.strip()
        if description is not None:
            updated.description = description or None
        updated.touch()
        self.db.update_task(updated)
        return self._reload(updated)

    def delete_task(self, task_id: str) -> List[str]:
        """Kill the session, remove the worktree, drop the task and its edges.

        Returns teardown warnings; the task row is deleted regardless.
        """
        task = self.get_task(task_id)
        self._log.transition(task.id, task.status, "deleted")
        warnings = self._teardown(task, remove_worktree=bool(task.worktree_path))
        self.db.delete_task(task.id)
        self._log.clear_context()
        return warnings

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def next_status(self, task: Task) -> Optional[TaskStatus]:
        index = task.column_index
        if index >= len(COLUMNS) - 1:
            return None
        return COLUMNS[index + 1]

    def move_forward(
        self,
        task_id: str,
        *,
        open_pr: Optional[bool] = None,
        pr_title: Optional[str] = None,
        pr_body: Optional[str] = None,
        confirm: bool = False,
    ) -> TransitionResult:
        """Advance a task exactly one column.

        Args:
            open_pr: running -> review only; None asks the caller to decide
            pr_title: PR title (defaults to the task title)
            pr_body: PR body (defaults to the task description)
            confirm: review -> done only; proceed although the PR is still open
        """
        task = self.get_task(task_id)
        target = self.next_status(task)
        if target is None:
            raise InvalidTransition(task.id, task.status)
        return self.move_to(
            task.id,
            target,
            open_pr=open_pr,
            pr_title=pr_title,
            pr_body=pr_body,
            confirm=confirm,
        )

    def move_back(self, task_id: str) -> TransitionResult:
        """review -> running (resume). The only backward edge."""
        task = self.get_task(task_id)
        if task.status != TaskStatus.REVIEW:
            raise InvalidTransition(task.id, task.status, TaskStatus.RUNNING.value)
        return self.move_to(task.id, TaskStatus.RUNNING)

    def move_to_running_directly(self, task_id: str) -> TransitionResult:
        """backlog -> planning -> running as two single-step transitions."""
        task = self.get_task(task_id)
        if task.status != TaskStatus.BACKLOG:
            raise InvalidTransition(task.id, task.status, TaskStatus.RUNNING.value)
        planning = self.move_to(task.id, TaskStatus.PLANNING)
        running = self.move_to(task.id, TaskStatus.RUNNING)
        running.warnings = planning.warnings + running.warnings
        running.watcher = planning.watcher
        return running

    def move_to(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        open_pr: Optional[bool] = None,
        pr_title: Optional[str] = None,
        pr_body: Optional[str] = None,
        confirm: bool = False,
    ) -> TransitionResult:
        """Run the transition from the task's current state to `target`.

        Raises:
            InvalidTransition: unless `target` is the next column or the
                review -> running resume edge
        """
        task = self.get_task(task_id)
        source = TaskStatus(task.status)
        target = TaskStatus(target)

        resume = source == TaskStatus.REVIEW and target == TaskStatus.RUNNING
        if not resume and target != self.next_status(task):
            raise InvalidTransition(task.id, source.value, target.value)

        self._log.transition(task.id, source.value, target.value)
        try:
            if resume:
                return self._finish(task, self._status_only(task, TaskStatus.RUNNING), [])
            if target == TaskStatus.PLANNING:
                return self._to_planning(task)
            if target == TaskStatus.RUNNING:
                return self._to_running(task)
            if target == TaskStatus.REVIEW:
                return self._to_review(task, open_pr, pr_title, pr_body)
            return self._to_done(task, confirm)
        finally:
            self._log.clear_context()

    def _to_planning(self, task: Task) -> TransitionResult:
        slug = task.slug
        repo = self.repo_root
        had_worktree = self.worktrees.worktree_exists(repo, slug)

        worktree_path = self.worktrees.create(repo, slug)
        warnings = self.worktrees.initialize(
            repo, worktree_path, self.config.copy_files, self.config.init_script
        )

        session_name = generate_session_name(task, self.project.name)
        agent = resolve_agent(task.agent)
        command = build_interactive_command(agent, build_planning_prompt(task.title, task.description))
        try:
            self.sessions.spawn(session_name, worktree_path, command)
        except UpfynError:
            if not had_worktree:
                self.worktrees.remove(repo, slug)
            raise

        updated = task.model_copy()
        updated.status = TaskStatus.PLANNING
        updated.session_name = session_name
        updated.worktree_path = str(worktree_path)
        updated.branch_name = branch_name_for(slug)
        updated.touch()
        try:
            self.db.update_task(updated)
        except Exception:
            # Don't leave an agent running for a task the store doesn't know moved
            self.sessions.kill(session_name)
            raise

        watcher = None
        if agent.has_acceptance_prompt and self.sessions.supports_input(session_name):
            watcher = self._start_watcher(session_name)

        self._log.info(f"Planning in {worktree_path} (session {session_name})")
        result = self._finish(task, updated, warnings, persisted=True)
        result.watcher = watcher
        return result

    def _start_watcher(self, session_name: str) -> AcceptanceWatcher:
        settings = self.config.session
        watcher = self.watcher_factory(
            self.sessions,
            session_name,
            initial_delay=settings.acceptance_initial_delay,
            interval=settings.acceptance_interval,
            max_attempts=settings.acceptance_max_attempts,
        )
        watcher.start()
        self.watchers[session_name] = watcher
        return watcher

    def _to_running(self, task: Task) -> TransitionResult:
        warnings = []
        if task.session_name and self.sessions.session_exists(task.session_name):
            if not self.sessions.send_keys(task.session_name, PROCEED_INSTRUCTION):
                warnings.append(
                    f"Session {task.session_name} does not accept input; "
                    f"tell the agent to '{PROCEED_INSTRUCTION}' yourself"
                )
        return self._finish(task, self._status_only(task, TaskStatus.RUNNING), warnings)

    def _to_review(
        self,
        task: Task,
        open_pr: Optional[bool],
        pr_title: Optional[str],
        pr_body: Optional[str],
    ) -> TransitionResult:
        if open_pr is None:
            return TransitionResult(task=task, changed=False, needs_confirmation=True)

        updated = task.model_copy()
        pr = None
        if open_pr:
            if not task.branch_name:
                raise PrCreationFailure("push", f"task {task.short_id} has no branch")
            pr = self.pr_workflow.create(
                self.repo_root,
                pr_title or task.title,
                pr_body if pr_body is not None else (task.description or ""),
                task.branch_name,
            )
            updated.pr_number = pr.number
            updated.pr_url = pr.url

        updated.status = TaskStatus.REVIEW
        updated.touch()
        result = self._finish(task, updated, [])
        result.pr = pr
        return result

    def _to_done(self, task: Task, confirm: bool) -> TransitionResult:
        warnings = []
        pr_state = None
        if task.pr_number:
            pr_state = self.pr_workflow.get_status(self.repo_root, task.pr_number)
            if pr_state == PullRequestState.OPEN and not confirm:
                return TransitionResult(
                    task=task,
                    changed=False,
                    needs_confirmation=True,
                    pr_state=pr_state,
                )
            if pr_state == PullRequestState.UNKNOWN:
                warnings.append(f"Could not determine the state of PR #{task.pr_number}")

        remove = bool(task.worktree_path or task.branch_name)
        if remove and not self.config.auto_cleanup:
            remove = False
            if task.worktree_path:
                warnings.append(f"auto_cleanup is off, worktree kept at {task.worktree_path}")
        warnings += self._teardown(task, remove_worktree=remove)

        updated = task.model_copy()
        updated.status = TaskStatus.DONE
        updated.session_name = None
        updated.worktree_path = None
        updated.touch()
        result = self._finish(task, updated, warnings)
        result.pr_state = pr_state
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _status_only(self, task: Task, status: TaskStatus) -> Task:
        updated = task.model_copy()
        updated.status = status
        updated.touch()
        return updated

    def _teardown(self, task: Task, remove_worktree: bool) -> List[str]:
        """Best-effort session kill and worktree removal."""
        warnings: List[str] = []
        if task.session_name:
            watcher = self.watchers.pop(task.session_name, None)
            if watcher is not None:
                watcher.stop()
            warnings += self.sessions.kill(task.session_name)
        if remove_worktree:
            warning = self.worktrees.remove(self.repo_root, task.slug)
            if warning:
                warnings.append(warning)
        return warnings

    def _finish(
        self,
        original: Task,
        updated: Task,
        warnings: List[str],
        persisted: bool = False,
    ) -> TransitionResult:
        if not persisted:
            self.db.update_task(updated)
        for warning in warnings:
            self._log.warning(warning)
        return TransitionResult(
            task=self._reload(updated),
            changed=True,
            warnings=list(warnings),
        )

    def _reload(self, task: Task) -> Task:
        return self.db.get_task(task.id) or task
