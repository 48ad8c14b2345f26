"""Pure workflow transitions.

Every function takes the current document plus the input of one action and
returns the next document, or raises a TransitionError. None of them mutate
their arguments, so a rejected action leaves the caller's document intact.
"""

import json
import logging
from typing import Optional, Dict, Any, List, Type, Union

from pydantic import BaseModel, ValidationError

from ssp_workflow.models.document import (
    CATALOGUE_OWNED_FIELDS,
    Control,
    ControlStatus,
    Document,
    EntryBranch,
    Stage,
    SystemInfo,
)
from ssp_workflow.models.evidence import EvidenceEntry
from ssp_workflow.models.collaborators import (
    CatalogueReference,
    FetchedCatalogue,
    ComparisonResult,
    ExtractionResult,
    CCMImportResult,
)
from ssp_workflow.evidence.history import record_fetch, EVIDENCE_HISTORY_LIMIT
from .errors import InputError, InvalidStageError, InvariantViolationError

logger = logging.getLogger(__name__)

PROTECTED_CONTROL_FIELDS = {"id", "evidence_history"}


def _require(document: Document, stage: Stage, branch: Optional[EntryBranch] = None) -> None:
    if document.stage != stage:
        raise InvalidStageError(
            f"Action requires stage '{stage.value}', workflow is at '{document.stage.value}'"
        )
    if branch is not None and document.entry_branch != branch:
        raise InvalidStageError(
            f"Action is only available when the workflow was entered via '{branch.value}'"
        )


def _evolve(document: Document, **changes: Any) -> Document:
    try:
        return document.evolve(**changes)
    except ValidationError as e:
        message = e.errors()[0]["msg"] if e.errors() else str(e)
        raise InvariantViolationError(message) from e


def _wire_keys(model: Type[BaseModel], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Rename snake_case field names in changes to their wire aliases."""
    renamed = {}
    for key, value in changes.items():
        field = model.model_fields.get(key)
        if field is not None:
            key = field.serialization_alias or field.alias or key
        renamed[key] = value
    return renamed


def _field_name(model: Type[BaseModel], key: str) -> str:
    for name, field in model.model_fields.items():
        if key in (name, field.alias, field.serialization_alias):
            return name
    return key


def _merge_system_info(current: SystemInfo, changes: Optional[Dict[str, Any]]) -> SystemInfo:
    if not changes:
        return current
    try:
        return SystemInfo.model_validate({**current.to_wire(), **_wire_keys(SystemInfo, changes)})
    except ValidationError as e:
        raise InputError(f"Invalid system information: {e.errors()[0]['msg']}") from e


def new_document() -> Document:
    """A blank document at the initial choice."""
    return Document()


def parse_uploaded_ssp(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """Parse an uploaded SSP file into a JSON object."""
    if isinstance(raw, dict):
        parsed = raw
    else:
        try:
            parsed = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise InputError("Invalid JSON file. Please upload a valid OSCAL SSP file.") from e
    if not isinstance(parsed, dict) or not parsed:
        raise InputError("Invalid JSON file. Please upload a valid OSCAL SSP file.")
    return parsed


def start_fresh(document: Document) -> Document:
    """Begin a new SSP: go to catalogue selection."""
    _require(document, Stage.INITIAL_CHOICE)
    return _evolve(
        document,
        stage=Stage.CATALOGUE_DECISION,
        entry_branch=EntryBranch.FRESH,
        existing_ssp=None,
        existing_catalogue_ref=None,
        comparison_stats=None,
    )


def begin_resume(
    document: Document, existing_ssp: Dict[str, Any], reference: CatalogueReference
) -> Document:
    """Continue from an uploaded SSP: go to the keep-or-update decision."""
    _require(document, Stage.INITIAL_CHOICE)
    return _evolve(
        document,
        stage=Stage.CATALOGUE_DECISION,
        entry_branch=EntryBranch.RESUME,
        existing_ssp=existing_ssp,
        existing_catalogue_ref=reference.catalog_url,
        comparison_stats=None,
    )


def select_catalogue(
    document: Document,
    url: str,
    fetched: FetchedCatalogue,
    classification: Optional[str] = None,
) -> Document:
    """Build control skeletons from a freshly selected catalogue."""
    _require(document, Stage.CATALOGUE_DECISION, EntryBranch.FRESH)
    skeletons = [
        control.model_copy(
            update={
                "status": ControlStatus.NOT_ASSESSED,
                "implementation": "",
                "remarks": "",
                "change_status": None,
            }
        )
        for control in fetched.controls
    ]
    return _evolve(
        document,
        stage=Stage.BULK_IMPORT,
        catalogue_ref=url,
        catalogue=fetched.catalogue,
        controls=skeletons,
        classification=classification,
        comparison_stats=None,
    )


def keep_existing_catalogue(
    document: Document, fetched: FetchedCatalogue, extraction: ExtractionResult
) -> Document:
    """Re-hydrate controls from the uploaded SSP against its own catalogue."""
    _require(document, Stage.CATALOGUE_DECISION, EntryBranch.RESUME)
    # No diff was performed, so nothing is annotated
    controls = [c.model_copy(update={"change_status": None}) for c in extraction.controls]
    return _evolve(
        document,
        stage=Stage.SYSTEM_INFO,
        catalogue_ref=document.existing_catalogue_ref,
        catalogue=fetched.catalogue,
        controls=controls,
        system_info=extraction.system_info or document.system_info,
        classification=extraction.classification,
        comparison_stats=None,
    )


def update_catalogue(
    document: Document,
    url: str,
    fetched: FetchedCatalogue,
    comparison: ComparisonResult,
    classification: Optional[str] = None,
) -> Document:
    """Move the uploaded SSP onto a new catalogue version using the diff result."""
    _require(document, Stage.CATALOGUE_DECISION, EntryBranch.RESUME)
    return _evolve(
        document,
        stage=Stage.SYSTEM_INFO,
        catalogue_ref=url,
        catalogue=fetched.catalogue,
        controls=comparison.controls,
        system_info=comparison.system_info or document.system_info,
        classification=classification,
        comparison_stats=comparison.stats,
    )


def merge_imported_controls(controls: List[Control], imported: CCMImportResult) -> List[Control]:
    """Overlay imported field values onto catalogue controls by id.

    Catalogue-owned metadata always keeps the catalogue's value.
    """
    by_id = {item.get("id"): item for item in imported.controls if item.get("id")}
    merged = []
    for control in controls:
        item = by_id.get(control.id)
        if item is None:
            merged.append(control)
            continue
        values = {k: v for k, v in _wire_keys(Control, item).items() if k != "apiDataHistory"}
        try:
            updated = Control.model_validate({**control.to_wire(), **values})
        except ValidationError as e:
            raise InputError(
                f"Imported values for control {control.id} are invalid: {e.errors()[0]['msg']}"
            ) from e
        kept = {name: getattr(control, name) for name in CATALOGUE_OWNED_FIELDS}
        kept["evidence_history"] = control.evidence_history
        merged.append(updated.model_copy(update=kept))
    return merged


def apply_bulk_import(document: Document, imported: CCMImportResult) -> Document:
    """Merge a CCM import into the catalogue controls and continue to system info."""
    _require(document, Stage.BULK_IMPORT, EntryBranch.FRESH)
    if not imported.success:
        raise InputError("The CCM file could not be imported")
    controls = merge_imported_controls(document.controls, imported)
    stats = imported.statistics
    return _evolve(
        document,
        stage=Stage.SYSTEM_INFO,
        controls=controls,
        system_info=_merge_system_info(document.system_info, imported.system_info),
        comparison_stats={
            "imported": True,
            "totalControls": stats.total_controls,
            "withImplementation": stats.with_implementation,
            "withStatus": stats.with_status,
        },
    )


def skip_bulk_import(document: Document) -> Document:
    """Continue to system info without importing."""
    _require(document, Stage.BULK_IMPORT, EntryBranch.FRESH)
    return _evolve(document, stage=Stage.SYSTEM_INFO)


def submit_system_info(document: Document, info: Optional[Dict[str, Any]] = None) -> Document:
    """Record system information and continue to control editing."""
    _require(document, Stage.SYSTEM_INFO)
    if not document.controls:
        logger.error(
            "No controls available when moving to control editing (catalogue: %s)",
            document.catalogue_ref,
        )
        raise InvariantViolationError(
            "Controls data is missing. Please go back and reload the catalog."
        )
    changes = dict(info or {})
    changes["catalogue_url"] = document.catalogue_ref
    return _evolve(
        document,
        stage=Stage.CONTROL_EDITING,
        system_info=_merge_system_info(document.system_info, changes),
    )


def update_system_info(document: Document, changes: Dict[str, Any]) -> Document:
    """Edit system information after it was first submitted."""
    if document.stage not in (Stage.SYSTEM_INFO, Stage.CONTROL_EDITING):
        raise InvalidStageError("System information can only be edited after catalogue selection")
    return _evolve(document, system_info=_merge_system_info(document.system_info, changes))


def update_control(document: Document, control_id: str, changes: Dict[str, Any]) -> Document:
    """Edit fields of one control."""
    _require(document, Stage.CONTROL_EDITING)
    control = document.find_control(control_id)
    if control is None:
        raise InputError(f"Unknown control: {control_id}")

    names = {_field_name(Control, key) for key in changes}
    if names & PROTECTED_CONTROL_FIELDS or "apiDataHistory" in changes:
        raise InputError("Control id and evidence history cannot be edited directly")

    try:
        updated = Control.model_validate({**control.to_wire(), **_wire_keys(Control, changes)})
    except ValidationError as e:
        raise InputError(f"Invalid value for control {control_id}: {e.errors()[0]['msg']}") from e

    if updated.status == ControlStatus.NOT_APPLICABLE:
        defaults = {}
        if not updated.responsible_party:
            defaults["responsible_party"] = "Not Applicable"
        if not updated.control_owner:
            defaults["control_owner"] = "Control Implementer"
        if defaults:
            updated = updated.model_copy(update=defaults)

    controls = [updated if c.id == control_id else c for c in document.controls]
    return _evolve(document, controls=controls)


def record_evidence(
    document: Document,
    control_id: str,
    entry: EvidenceEntry,
    limit: int = EVIDENCE_HISTORY_LIMIT,
) -> Document:
    """Record an evidence fetch against the current version of a control."""
    _require(document, Stage.CONTROL_EDITING)
    control = document.find_control(control_id)
    if control is None:
        raise InputError(f"Unknown control: {control_id}")
    updated = record_fetch(control, entry, limit=limit)
    controls = [updated if c.id == control_id else c for c in document.controls]
    return _evolve(document, controls=controls)
