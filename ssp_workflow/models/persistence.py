"""Data models for locally persisted workbench state."""

from datetime import datetime
from typing import Optional, Literal

from pydantic import AliasChoices, BaseModel, Field

from .document import Document, WireModel

SCHEMA_VERSION = "1.0"

SkipReason = Literal["too-large", "quota-exceeded", "invalid"]


class PersistedSnapshot(WireModel):
    """Serialized form of a document written to durable storage."""

    document: Document = Field(..., description="The saved document")
    last_modified: datetime = Field(..., description="When the snapshot was written")
    schema_version: str = Field(SCHEMA_VERSION, description="Snapshot format version")


class SaveHistoryRecord(WireModel):
    """One entry in the save history ring."""

    timestamp: datetime = Field(..., description="When the save happened")
    system_name: str = Field("Unnamed System", description="System name at save time")
    control_count: int = Field(
        0,
        ge=0,
        validation_alias=AliasChoices("controlCount", "control_count", "controlsCount"),
        serialization_alias="controlCount",
        description="Number of controls at save time",
    )


class SaveResult(BaseModel):
    """Outcome of a save attempt."""

    saved: bool = Field(..., description="Whether the snapshot was written")
    reason: Optional[SkipReason] = Field(None, description="Why the save was skipped")
    size_bytes: int = Field(0, description="Serialized snapshot size")
    saved_at: Optional[datetime] = Field(None, description="Timestamp of the written snapshot")

    @property
    def skipped(self) -> bool:
        return not self.saved
