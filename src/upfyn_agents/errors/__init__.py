"""Error taxonomy and user-friendly translation."""

from .exceptions import (
    InvalidTransition,
    PrCreationFailure,
    SpawnFailure,
    TaskNotFound,
    UpfynError,
    WorktreeCreationFailure,
)
from .translator import ErrorTranslator, UserFriendlyError

__all__ = [
    "ErrorTranslator",
    "UserFriendlyError",
    "UpfynError",
    "SpawnFailure",
    "WorktreeCreationFailure",
    "PrCreationFailure",
    "InvalidTransition",
    "TaskNotFound",
]
