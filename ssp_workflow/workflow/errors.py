"""Exceptions raised by workflow transitions."""

from ssp_workflow.models.results import FailureKind, TransitionFailure


class TransitionError(Exception):
    """Base class for rejected transitions."""

    kind = FailureKind.STATE
    blocking = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_failure(self) -> TransitionFailure:
        return TransitionFailure(kind=self.kind, message=self.message, blocking=self.blocking)


class InputError(TransitionError):
    """User supplied input that cannot be used."""

    kind = FailureKind.INPUT


class InvalidStageError(TransitionError):
    """Action is not available from the current stage or entry branch."""

    kind = FailureKind.STATE


class InvariantViolationError(TransitionError):
    """Transition would produce an invalid document."""

    kind = FailureKind.INVARIANT
    blocking = True


class StaleResultError(TransitionError):
    """A collaborator response arrived after the workflow moved on."""

    kind = FailureKind.STALE
