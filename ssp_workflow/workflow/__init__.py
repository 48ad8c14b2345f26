"""Workflow state machine and session orchestration."""

from .session import WorkflowSession
from .autosave import AutoSaveScheduler
from .errors import (
    TransitionError,
    InputError,
    InvalidStageError,
    InvariantViolationError,
    StaleResultError,
)

__all__ = [
    "WorkflowSession",
    "AutoSaveScheduler",
    "TransitionError",
    "InputError",
    "InvalidStageError",
    "InvariantViolationError",
    "StaleResultError",
]
