"""Tests for the task lifecycle state machine."""

import re
import sqlite3
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from upfyn_agents.core.config import AppConfig
from upfyn_agents.core.orchestrator import TaskOrchestrator
from upfyn_agents.core.pr_workflow import PullRequest, PullRequestState, PullRequestWorkflow
from upfyn_agents.core.task import Project, TaskConnection, TaskStatus
from upfyn_agents.errors.exceptions import (
    InvalidTransition,
    PrCreationFailure,
    SpawnFailure,
    TaskNotFound,
    UpfynError,
    WorktreeCreationFailure,
)
from upfyn_agents.storage.database import ProjectDatabase
from upfyn_agents.workspace.worktree_manager import WorktreeManager


REPO = Path("/work/acme")


@pytest.fixture
def db(tmp_path):
    database = ProjectDatabase(tmp_path / "project.db")
    yield database
    database.close()


@pytest.fixture
def worktrees():
    manager = MagicMock(spec=WorktreeManager)
    manager.worktree_exists.return_value = False
    manager.create.side_effect = lambda repo, slug: Path(repo) / ".upfyn" / "worktrees" / slug
    manager.initialize.return_value = []
    manager.remove.return_value = None
    return manager


@pytest.fixture
def pr_workflow():
    return MagicMock(spec=PullRequestWorkflow)


@pytest.fixture
def watcher_factory():
    return MagicMock()


def _orchestrator(db, sessions, worktrees, pr_workflow, watcher_factory, config=None):
    return TaskOrchestrator(
        db,
        Project.create("acme", str(REPO)),
        config or AppConfig(),
        sessions,
        worktrees=worktrees,
        pr_workflow=pr_workflow,
        watcher_factory=watcher_factory,
    )


@pytest.fixture
def orchestrator(db, fake_sessions, worktrees, pr_workflow, watcher_factory):
    return _orchestrator(db, fake_sessions, worktrees, pr_workflow, watcher_factory)


def _advance(orchestrator, task_id, until):
    """Move a task forward until it reaches `until` (no PR on review)."""
    while orchestrator.get_task(task_id).status != until.value:
        orchestrator.move_forward(task_id, open_pr=False, confirm=True)
    return orchestrator.get_task(task_id)


class TestCreateAndEdit:
    def test_create_task_lands_in_backlog(self, orchestrator):
        task = orchestrator.create_task("  Fix login bug ", description="Users get logged out")

        assert task.status == "backlog"
        assert task.title == "Fix login bug"
        assert task.agent == "claude"
        assert orchestrator.get_task(task.id) == task

    def test_agent_defaults_from_config(self, db, fake_sessions, worktrees, pr_workflow, watcher_factory):
        orchestrator = _orchestrator(
            db, fake_sessions, worktrees, pr_workflow, watcher_factory,
            config=AppConfig(default_agent="aider"),
        )
        assert orchestrator.create_task("x").agent == "aider"

    def test_empty_title_rejected(self, orchestrator):
        with pytest.raises(UpfynError):
            orchestrator.create_task("   ")

    def test_lookup_by_prefix(self, orchestrator):
        task = orchestrator.create_task("x")
        assert orchestrator.get_task(task.short_id).id == task.id

    def test_unknown_task(self, orchestrator):
        with pytest.raises(TaskNotFound):
            orchestrator.get_task("does-not-exist")

    def test_rename_in_backlog(self, orchestrator):
        task = orchestrator.create_task("old title")
        updated = orchestrator.edit_task(task.id, title="new title", description="more")
        assert updated.title == "new title"
        assert updated.description == "more"

    def test_rename_after_backlog_rejected(self, orchestrator):
        task = orchestrator.create_task("Fix login bug")
        orchestrator.move_forward(task.id)

        with pytest.raises(UpfynError):
            orchestrator.edit_task(task.id, title="Something else")
        # Description edits are fine
        assert orchestrator.edit_task(task.id, description="d").description == "d"


class TestPlanning:
    def test_backlog_to_planning(self, orchestrator, fake_sessions, worktrees, watcher_factory):
        task = orchestrator.create_task("Fix login bug", description="Users get logged out")

        result = orchestrator.move_forward(task.id)

        moved = result.task
        assert result.changed is True
        assert moved.status == "planning"
        assert re.fullmatch(r"task-[0-9a-f]{8}--acme--fix-login-bug", moved.session_name)
        assert moved.worktree_path == str(REPO / ".upfyn" / "worktrees" / "fix-login-bug")
        assert moved.branch_name == "task/fix-login-bug"
        worktrees.create.assert_called_once_with(REPO, "fix-login-bug")

        command = fake_sessions.commands[moved.session_name]
        assert command.startswith("claude --dangerously-skip-permissions ")
        assert "Plan the implementation for: Fix login bug" in command
        assert "Details: Users get logged out" in command
        assert fake_sessions.alive[moved.session_name] == Path(moved.worktree_path)

    def test_watcher_started_for_claude(self, orchestrator, watcher_factory):
        task = orchestrator.create_task("Fix login bug")

        result = orchestrator.move_forward(task.id)

        watcher_factory.assert_called_once()
        assert watcher_factory.call_args[0][1] == result.task.session_name
        assert watcher_factory.call_args[1]["initial_delay"] == 3.0
        watcher_factory.return_value.start.assert_called_once()
        assert result.watcher is watcher_factory.return_value

    def test_no_watcher_for_agent_without_prompt(self, orchestrator, watcher_factory):
        task = orchestrator.create_task("Fix login bug", agent="aider")

        result = orchestrator.move_forward(task.id)

        watcher_factory.assert_not_called()
        assert result.watcher is None

    def test_no_watcher_without_input_channel(
        self, db, make_sessions, worktrees, pr_workflow, watcher_factory
    ):
        orchestrator = _orchestrator(
            db, make_sessions(supports_input=False), worktrees, pr_workflow, watcher_factory
        )
        task = orchestrator.create_task("Fix login bug")

        orchestrator.move_forward(task.id)

        watcher_factory.assert_not_called()

    def test_copy_warnings_are_reported(self, db, fake_sessions, worktrees, pr_workflow, watcher_factory):
        worktrees.initialize.return_value = ["copy_files: 'missing.txt' not found in project root, skipping"]
        config = AppConfig(copy_files=[".env", "missing.txt"], init_script="make setup")
        orchestrator = _orchestrator(db, fake_sessions, worktrees, pr_workflow, watcher_factory, config)
        task = orchestrator.create_task("x")

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "planning"
        assert result.warnings == ["copy_files: 'missing.txt' not found in project root, skipping"]
        args = worktrees.initialize.call_args[0]
        assert args[2] == [".env", "missing.txt"]
        assert args[3] == "make setup"

    def test_spawn_failure_leaves_task_untouched(
        self, db, make_sessions, worktrees, pr_workflow, watcher_factory
    ):
        sessions = make_sessions(fail_spawn=SpawnFailure("s", "tmux", "server exited"))
        orchestrator = _orchestrator(db, sessions, worktrees, pr_workflow, watcher_factory)
        task = orchestrator.create_task("Fix login bug")

        with pytest.raises(SpawnFailure):
            orchestrator.move_forward(task.id)

        stored = orchestrator.get_task(task.id)
        assert stored == task
        # Worktree created by this attempt is rolled back
        worktrees.remove.assert_called_once_with(REPO, "fix-login-bug")

    def test_spawn_failure_keeps_preexisting_worktree(
        self, db, make_sessions, worktrees, pr_workflow, watcher_factory
    ):
        worktrees.worktree_exists.return_value = True
        sessions = make_sessions(fail_spawn=SpawnFailure("s", "tmux"))
        orchestrator = _orchestrator(db, sessions, worktrees, pr_workflow, watcher_factory)
        task = orchestrator.create_task("x")

        with pytest.raises(SpawnFailure):
            orchestrator.move_forward(task.id)

        worktrees.remove.assert_not_called()

    def test_worktree_failure_leaves_task_untouched(self, orchestrator, worktrees, fake_sessions):
        worktrees.create.side_effect = WorktreeCreationFailure("/work/acme/.upfyn/worktrees/x", "fatal")
        task = orchestrator.create_task("x")

        with pytest.raises(WorktreeCreationFailure):
            orchestrator.move_forward(task.id)

        assert orchestrator.get_task(task.id).status == "backlog"
        assert fake_sessions.alive == {}

    def test_persist_failure_kills_session(self, orchestrator, db, fake_sessions):
        task = orchestrator.create_task("x")

        with patch.object(db, "update_task", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                orchestrator.move_forward(task.id)

        assert fake_sessions.alive == {}
        assert len(fake_sessions.killed) == 1


class TestRunning:
    def test_proceed_sent_to_live_session(self, orchestrator, fake_sessions):
        task = orchestrator.create_task("Fix login bug")
        planning = orchestrator.move_forward(task.id).task

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "running"
        assert fake_sessions.sent == [(planning.session_name, "proceed with implementation")]
        assert result.warnings == []

    def test_missing_session_only_changes_status(self, orchestrator, fake_sessions):
        task = orchestrator.create_task("Fix login bug")
        planning = orchestrator.move_forward(task.id).task
        fake_sessions.alive.clear()

        result = orchestrator.move_forward(task.id)

        moved = result.task
        assert moved.status == "running"
        assert fake_sessions.sent == []
        assert result.warnings == []
        assert moved.session_name == planning.session_name
        assert moved.worktree_path == planning.worktree_path
        assert moved.branch_name == planning.branch_name

    def test_session_without_input_gets_warning(
        self, db, make_sessions, worktrees, pr_workflow, watcher_factory
    ):
        orchestrator = _orchestrator(
            db, make_sessions(supports_input=False), worktrees, pr_workflow, watcher_factory
        )
        task = orchestrator.create_task("x")
        orchestrator.move_forward(task.id)

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "running"
        assert len(result.warnings) == 1
        assert "proceed with implementation" in result.warnings[0]

    def test_run_directly_from_backlog(self, orchestrator, fake_sessions, watcher_factory):
        task = orchestrator.create_task("Fix login bug")

        result = orchestrator.move_to_running_directly(task.id)

        assert result.task.status == "running"
        assert result.task.session_name in fake_sessions.alive
        assert result.watcher is watcher_factory.return_value

    def test_run_directly_requires_backlog(self, orchestrator):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        with pytest.raises(InvalidTransition):
            orchestrator.move_to_running_directly(task.id)


class TestReview:
    def test_asks_before_deciding_on_pr(self, orchestrator):
        task = orchestrator.create_task("x")
        running = _advance(orchestrator, task.id, TaskStatus.RUNNING)

        result = orchestrator.move_forward(task.id)

        assert result.needs_confirmation is True
        assert result.changed is False
        assert orchestrator.get_task(task.id) == running

    def test_review_without_pr(self, orchestrator, pr_workflow):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        result = orchestrator.move_forward(task.id, open_pr=False)

        assert result.task.status == "review"
        assert result.task.pr_number is None
        pr_workflow.create.assert_not_called()

    def test_review_with_pr(self, orchestrator, pr_workflow, fake_sessions):
        pr_workflow.create.return_value = PullRequest(17, "https://github.com/acme/app/pull/17")
        task = orchestrator.create_task("Fix login bug", description="Users get logged out")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        result = orchestrator.move_forward(task.id, open_pr=True)

        assert result.task.status == "review"
        assert result.task.pr_number == 17
        assert result.task.pr_url == "https://github.com/acme/app/pull/17"
        assert result.pr.number == 17
        pr_workflow.create.assert_called_once_with(
            REPO, "Fix login bug", "Users get logged out", "task/fix-login-bug"
        )
        # The agent keeps running through review
        assert result.task.session_name in fake_sessions.alive

    def test_custom_pr_title_and_body(self, orchestrator, pr_workflow):
        pr_workflow.create.return_value = PullRequest(3, "u/3")
        task = orchestrator.create_task("x", description="d")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        orchestrator.move_forward(task.id, open_pr=True, pr_title="T", pr_body="")

        pr_workflow.create.assert_called_once_with(REPO, "T", "", "task/x")

    def test_pr_failure_leaves_task_running(self, orchestrator, pr_workflow):
        pr_workflow.create.side_effect = PrCreationFailure("push", "rejected")
        task = orchestrator.create_task("x")
        running = _advance(orchestrator, task.id, TaskStatus.RUNNING)

        with pytest.raises(PrCreationFailure):
            orchestrator.move_forward(task.id, open_pr=True)

        assert orchestrator.get_task(task.id) == running

    def test_back_to_running(self, orchestrator, fake_sessions):
        task = orchestrator.create_task("x")
        review = _advance(orchestrator, task.id, TaskStatus.REVIEW)

        result = orchestrator.move_back(task.id)

        assert result.task.status == "running"
        assert result.task.session_name == review.session_name
        assert fake_sessions.sent[-1][1] == "proceed with implementation"
        assert len(fake_sessions.sent) == 1

    def test_back_only_from_review(self, orchestrator):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        with pytest.raises(InvalidTransition):
            orchestrator.move_back(task.id)


class TestDone:
    def _review_with_pr(self, orchestrator, pr_workflow):
        pr_workflow.create.return_value = PullRequest(17, "https://github.com/acme/app/pull/17")
        task = orchestrator.create_task("Fix login bug")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)
        return orchestrator.move_forward(task.id, open_pr=True).task

    def test_open_pr_needs_confirmation(self, orchestrator, pr_workflow, fake_sessions, worktrees):
        review = self._review_with_pr(orchestrator, pr_workflow)
        pr_workflow.get_status.return_value = PullRequestState.OPEN

        result = orchestrator.move_forward(review.id)

        assert result.needs_confirmation is True
        assert result.pr_state == PullRequestState.OPEN
        assert orchestrator.get_task(review.id) == review
        assert fake_sessions.killed == []
        worktrees.remove.assert_not_called()

    def test_confirmed_done_tears_down(self, orchestrator, pr_workflow, fake_sessions, worktrees):
        review = self._review_with_pr(orchestrator, pr_workflow)
        pr_workflow.get_status.return_value = PullRequestState.OPEN

        result = orchestrator.move_forward(review.id, confirm=True)

        done = result.task
        assert done.status == "done"
        assert done.session_name is None
        assert done.worktree_path is None
        assert done.branch_name == "task/fix-login-bug"
        assert done.pr_number == 17
        assert fake_sessions.killed == [review.session_name]
        worktrees.remove.assert_called_once_with(REPO, "fix-login-bug")

    def test_merged_pr_needs_no_confirmation(self, orchestrator, pr_workflow):
        review = self._review_with_pr(orchestrator, pr_workflow)
        pr_workflow.get_status.return_value = PullRequestState.MERGED

        result = orchestrator.move_forward(review.id)

        assert result.task.status == "done"
        assert result.warnings == []

    def test_unknown_pr_state_proceeds_with_warning(self, orchestrator, pr_workflow):
        review = self._review_with_pr(orchestrator, pr_workflow)
        pr_workflow.get_status.return_value = PullRequestState.UNKNOWN

        result = orchestrator.move_forward(review.id)

        assert result.task.status == "done"
        assert result.pr_state == PullRequestState.UNKNOWN
        assert any("#17" in w for w in result.warnings)

    def test_no_pr_skips_status_check(self, orchestrator, pr_workflow):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.REVIEW)

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "done"
        pr_workflow.get_status.assert_not_called()

    def test_teardown_warnings_do_not_block(self, orchestrator, fake_sessions, worktrees):
        fake_sessions.kill_warnings = ["Failed to remove session directory /x: busy"]
        worktrees.remove.return_value = "Could not remove worktree /y: locked"
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.REVIEW)

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "done"
        assert result.warnings == [
            "Failed to remove session directory /x: busy",
            "Could not remove worktree /y: locked",
        ]

    def test_auto_cleanup_off_keeps_worktree(
        self, db, fake_sessions, worktrees, pr_workflow, watcher_factory
    ):
        orchestrator = _orchestrator(
            db, fake_sessions, worktrees, pr_workflow, watcher_factory,
            config=AppConfig(auto_cleanup=False),
        )
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.REVIEW)

        result = orchestrator.move_forward(task.id)

        assert result.task.status == "done"
        worktrees.remove.assert_not_called()
        assert any("auto_cleanup" in w for w in result.warnings)

    def test_watcher_stopped_on_teardown(self, orchestrator, watcher_factory):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.REVIEW)

        orchestrator.move_forward(task.id)

        watcher_factory.return_value.stop.assert_called_once()

    def test_done_is_terminal(self, orchestrator):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.DONE)

        with pytest.raises(InvalidTransition):
            orchestrator.move_forward(task.id)


class TestInvalidMoves:
    def test_skipping_columns_rejected(self, orchestrator, fake_sessions, worktrees):
        task = orchestrator.create_task("x")

        with pytest.raises(InvalidTransition):
            orchestrator.move_to(task.id, TaskStatus.REVIEW)

        assert orchestrator.get_task(task.id) == task
        worktrees.create.assert_not_called()
        assert fake_sessions.alive == {}

    def test_moving_backwards_rejected(self, orchestrator):
        task = orchestrator.create_task("x")
        _advance(orchestrator, task.id, TaskStatus.RUNNING)

        with pytest.raises(InvalidTransition):
            orchestrator.move_to(task.id, TaskStatus.PLANNING)


class TestDelete:
    def test_delete_tears_down_and_cascades(self, orchestrator, db, fake_sessions, worktrees):
        task = orchestrator.create_task("Fix login bug")
        other = orchestrator.create_task("Other")
        db.insert_connection(TaskConnection.create(task.id, other.id))
        planning = orchestrator.move_forward(task.id).task

        warnings = orchestrator.delete_task(task.id)

        assert warnings == []
        assert fake_sessions.killed == [planning.session_name]
        worktrees.remove.assert_called_once_with(REPO, "fix-login-bug")
        with pytest.raises(TaskNotFound):
            orchestrator.get_task(task.id)
        assert db.get_all_connections() == []
        assert orchestrator.get_task(other.id).title == "Other"

    def test_delete_backlog_task_touches_nothing(self, orchestrator, fake_sessions, worktrees):
        task = orchestrator.create_task("x")

        orchestrator.delete_task(task.id)

        assert fake_sessions.killed == []
        worktrees.remove.assert_not_called()


class TestQueries:
    def test_capture_and_attach(self, orchestrator, fake_sessions):
        task = orchestrator.create_task("x")
        assert orchestrator.capture(task.id) == ""
        assert orchestrator.attach(task.id) is False

        planning = orchestrator.move_forward(task.id).task
        fake_sessions.output[planning.session_name] = "Planning..."

        assert orchestrator.capture(task.id) == "Planning..."
        assert orchestrator.attach(task.id) is True
        assert [s.name for s in orchestrator.sessions_list()] == [planning.session_name]

    @patch("upfyn_agents.core.orchestrator.git")
    def test_diff_against_detected_main_line(self, mock_git, orchestrator):
        mock_git.detect_main_branch.return_value = "master"
        mock_git.diff_full.return_value = "diff --git a/x b/x"
        task = orchestrator.create_task("x")
        assert orchestrator.diff(task.id) == ""

        orchestrator.move_forward(task.id)

        assert orchestrator.diff(task.id) == "diff --git a/x b/x"
        mock_git.diff_full.assert_called_once_with(REPO, "master", "task/x")
        orchestrator.diff(task.id, stat=True)
        mock_git.diff_stat.assert_called_once_with(REPO, "master", "task/x")

    @patch("upfyn_agents.core.orchestrator.git")
    def test_diff_against_configured_base_branch(
        self, mock_git, db, fake_sessions, worktrees, pr_workflow, watcher_factory
    ):
        orchestrator = _orchestrator(
            db, fake_sessions, worktrees, pr_workflow, watcher_factory,
            config=AppConfig(base_branch="develop"),
        )
        task = orchestrator.create_task("x")
        orchestrator.move_forward(task.id)

        orchestrator.diff(task.id)

        mock_git.diff_full.assert_called_once_with(REPO, "develop", "task/x")
        mock_git.detect_main_branch.assert_not_called()
