"""Data models for the SSP document under construction."""

from enum import Enum
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .evidence import EvidenceEntry


class Stage(str, Enum):
    """Workflow stages, in pipeline order."""

    INITIAL_CHOICE = "initial-choice"
    CATALOGUE_DECISION = "catalogue-decision"
    BULK_IMPORT = "bulk-import"
    SYSTEM_INFO = "system-info"
    CONTROL_EDITING = "control-editing"

    @property
    def ordinal(self) -> int:
        """Position of the stage in the pipeline."""
        return STAGE_ORDER.index(self)


STAGE_ORDER = [
    Stage.INITIAL_CHOICE,
    Stage.CATALOGUE_DECISION,
    Stage.BULK_IMPORT,
    Stage.SYSTEM_INFO,
    Stage.CONTROL_EDITING,
]

STAGE_TITLES = {
    Stage.INITIAL_CHOICE: "Initial Choice",
    Stage.CATALOGUE_DECISION: "Catalog Selection",
    Stage.BULK_IMPORT: "Select Compliance Framework",
    Stage.SYSTEM_INFO: "System Information",
    Stage.CONTROL_EDITING: "Document Controls",
}


class EntryBranch(str, Enum):
    """How the user entered the workflow."""

    FRESH = "fresh"
    RESUME = "resume"


class ControlStatus(str, Enum):
    """Assessment status of a control."""

    NOT_ASSESSED = "not-assessed"
    EFFECTIVE = "effective"
    ALTERNATE_CONTROL = "alternate-control"
    INEFFECTIVE = "ineffective"
    NO_VISIBILITY = "no-visibility"
    NOT_IMPLEMENTED = "not-implemented"
    NOT_APPLICABLE = "not-applicable"


ChangeStatus = Literal["new", "changed", "unchanged"]

# Fields that belong to the catalogue and survive a bulk import untouched
CATALOGUE_OWNED_FIELDS = ("group_id", "group_title", "parent_id")


class WireModel(BaseModel):
    """Base for models exchanged with collaborators and persisted as camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON form."""
        return self.model_dump(mode="json", by_alias=True)


class Control(WireModel):
    """A security control being documented."""

    id: str = Field(..., min_length=1, description="Control ID, stable across catalogue versions")
    title: Optional[str] = Field(None, description="Control title from the catalogue")
    status: ControlStatus = Field(ControlStatus.NOT_ASSESSED, description="Assessment status")
    implementation: str = Field("", description="Implementation statement")
    remarks: str = Field("", description="Free-form remarks")
    responsible_party: str = Field("", description="Responsible party")
    control_owner: str = Field("", description="Control inheritance / implementer")
    control_type: str = Field("", description="Control type")
    api_url: Optional[str] = Field(None, description="Automated evidence endpoint")
    evidence_history: List[EvidenceEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("evidenceHistory", "evidence_history", "apiDataHistory"),
        serialization_alias="evidenceHistory",
        description="Evidence snapshots, newest first",
    )
    change_status: Optional[ChangeStatus] = Field(
        None, description="Diff annotation against the previous catalogue version"
    )
    group_id: Optional[str] = Field(None, description="Catalogue group ID")
    group_title: Optional[str] = Field(None, description="Catalogue group title")
    parent_id: Optional[str] = Field(None, description="Parent control ID for enhancements")

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if value is None or value == "":
            return ControlStatus.NOT_ASSESSED
        if isinstance(value, str):
            return value.strip().lower().replace("_", "-").replace(" ", "-")
        return value

    @field_validator("evidence_history")
    @classmethod
    def _normalize_history(cls, value: List[EvidenceEntry]) -> List[EvidenceEntry]:
        # Histories from collaborators or legacy payloads may be long or hold same-day repeats
        from ssp_workflow.evidence.history import EvidenceLedger

        return EvidenceLedger(value).finalize()

    @field_validator("implementation", "remarks", "responsible_party", "control_owner",
                     "control_type", mode="before")
    @classmethod
    def _none_to_blank(cls, value: Any) -> Any:
        return "" if value is None else value


class SystemInfo(WireModel):
    """Descriptive information about the system the SSP covers."""

    title: str = "System Security Plan"
    system_name: str = ""
    system_id: str = ""
    description: str = ""
    security_level: str = "moderate"
    confidentiality: str = "moderate"
    integrity: str = "moderate"
    availability: str = "moderate"
    status: str = "under-development"
    catalogue_url: Optional[str] = None


class Document(WireModel):
    """The SSP document under construction, owned by the workflow."""

    model_config = ConfigDict(extra="ignore")

    stage: Stage = Field(Stage.INITIAL_CHOICE, description="Current workflow stage")
    entry_branch: Optional[EntryBranch] = Field(None, description="fresh or resume")
    catalogue_ref: Optional[str] = Field(None, description="URL of the selected catalogue")
    catalogue: Optional[Dict[str, Any]] = Field(None, description="Fetched catalogue")
    controls: List[Control] = Field(default_factory=list)
    system_info: SystemInfo = Field(default_factory=SystemInfo)
    existing_ssp: Optional[Dict[str, Any]] = Field(
        None, description="Uploaded SSP when resuming"
    )
    existing_catalogue_ref: Optional[str] = Field(
        None, description="Catalogue URL extracted from the uploaded SSP"
    )
    classification: Optional[str] = Field(None, description="Initial classification")
    comparison_stats: Optional[Dict[str, Any]] = Field(
        None, description="Diff or import statistics"
    )

    @model_validator(mode="after")
    def _check_invariants(self) -> "Document":
        if self.stage.ordinal >= Stage.CONTROL_EDITING.ordinal and not self.controls:
            raise ValueError("controls must not be empty once control editing is reached")
        if self.catalogue is not None and not self.catalogue_ref:
            raise ValueError("catalogue_ref must be set whenever a catalogue is set")
        if self.stage != Stage.INITIAL_CHOICE and self.entry_branch is None:
            raise ValueError(f"entry_branch is required at stage {self.stage.value}")
        if self.stage == Stage.BULK_IMPORT and self.entry_branch != EntryBranch.FRESH:
            raise ValueError("bulk import is only reachable when starting fresh")
        if (
            self.stage == Stage.CATALOGUE_DECISION
            and self.entry_branch == EntryBranch.RESUME
            and self.existing_ssp is None
        ):
            raise ValueError("resuming requires the uploaded SSP")
        return self

    def evolve(self, **changes: Any) -> "Document":
        """Return a validated copy with the given fields replaced."""
        data = {name: getattr(self, name) for name in type(self).model_fields}
        data.update(changes)
        return type(self).model_validate(data)

    def find_control(self, control_id: str) -> Optional[Control]:
        """Get a control by ID."""
        for control in self.controls:
            if control.id == control_id:
                return control
        return None

    @property
    def system_name(self) -> str:
        return self.system_info.system_name or "Unnamed System"
