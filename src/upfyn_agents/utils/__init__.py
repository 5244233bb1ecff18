"""Shared utility functions for upfyn agents."""

from .atomic_io import atomic_write_text
from .error_handling import log_and_ignore
from .subprocess_utils import (
    SubprocessError,
    run_command,
    run_git_command,
    check_command_exists,
)
from .process_utils import kill_process_tree, is_process_alive
from .validators import validate_branch_name, validate_identifier

__all__ = [
    # Atomic I/O
    "atomic_write_text",
    # Error handling
    "log_and_ignore",
    # Subprocess utilities
    "SubprocessError",
    "run_command",
    "run_git_command",
    "check_command_exists",
    # Process management
    "kill_process_tree",
    "is_process_alive",
    # Validators
    "validate_branch_name",
    "validate_identifier",
]
