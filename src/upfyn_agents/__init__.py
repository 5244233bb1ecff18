"""Upfyn agents: run coding agents on a task board, one git worktree per task."""

__version__ = "0.1.0"
