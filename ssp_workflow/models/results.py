"""Outcome models for workflow transitions."""

from enum import Enum
from typing import Optional, List, Any

from pydantic import BaseModel, Field

from .document import Document, Stage


class FailureKind(str, Enum):
    """Classification of a failed transition."""

    NETWORK = "network"
    PARSE = "parse"
    INPUT = "input"
    COLLABORATOR = "collaborator"
    INVARIANT = "invariant"
    STATE = "state"
    STALE = "stale"


class TransitionFailure(BaseModel):
    """Tagged failure; the document and stage are left unchanged."""

    kind: FailureKind = Field(..., description="Failure classification")
    message: str = Field(..., description="Human readable message")
    blocking: bool = Field(False, description="Whether only start-over can recover")


class TransitionResult(BaseModel):
    """Result of applying a workflow action."""

    document: Document = Field(..., description="Document after the action")
    failure: Optional[TransitionFailure] = Field(None, description="Set when the action failed")
    warnings: List[Any] = Field(
        default_factory=list, description="Integrity warnings raised during the action"
    )

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def stage(self) -> Stage:
        return self.document.stage
