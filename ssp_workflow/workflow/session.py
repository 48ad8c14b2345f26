"""Workflow session orchestrating the SSP assembly stages."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable, Union

from ssp_workflow.models.document import Document, Stage, STAGE_TITLES
from ssp_workflow.models.persistence import SaveResult
from ssp_workflow.models.results import TransitionFailure, TransitionResult, FailureKind
from ssp_workflow.utils.collaborator_client import CollaboratorClient, CollaboratorError
from ssp_workflow.utils.storage import PersistenceStore
from ssp_workflow.evidence.fetcher import fetch_evidence
from ssp_workflow.evidence.history import EVIDENCE_HISTORY_LIMIT
from . import transitions
from .autosave import AutoSaveScheduler, AUTOSAVE_DELAY_SECONDS
from .errors import TransitionError, InputError, InvalidStageError, StaleResultError

logger = logging.getLogger(__name__)


class WorkflowSession:
    """Holds the in-progress document and applies workflow actions to it."""

    def __init__(
        self,
        store: PersistenceStore,
        client: CollaboratorClient,
        scheduler: Optional[AutoSaveScheduler] = None,
        autosave_enabled: bool = True,
        autosave_delay: float = AUTOSAVE_DELAY_SECONDS,
        evidence_history_limit: int = EVIDENCE_HISTORY_LIMIT,
        on_warning: Optional[Callable[[Any], None]] = None,
    ):
        """
        Initialize workflow session.

        Args:
            store: Persistence store shared with the auto-save scheduler
            client: Collaborator API client
            scheduler: Auto-save scheduler; one is created when omitted
            autosave_enabled: Whether mutations arm the auto-save
            autosave_delay: Quiet window before an auto-save fires
            evidence_history_limit: Evidence entries kept per control
            on_warning: Called with each integrity warning as it arrives
        """
        self.store = store
        self.client = client
        self.autosave_enabled = autosave_enabled
        self.evidence_history_limit = evidence_history_limit
        self.on_warning = on_warning

        self.document = transitions.new_document()
        self.warnings: List[Any] = []
        self.blocking_error: Optional[TransitionFailure] = None
        self.last_save_time: Optional[datetime] = None
        # Bumped whenever the document is replaced wholesale (reset, restore)
        self._epoch = 0

        self.scheduler = scheduler or AutoSaveScheduler(store, delay=autosave_delay)
        self.scheduler.bind(lambda: self.document)
        self.scheduler.on_saved = self._record_save

    # State helpers

    def _record_save(self, result: SaveResult) -> None:
        if result.saved:
            self.last_save_time = result.saved_at

    def _warn(self, warning: Any, collected: List[Any]) -> None:
        if not warning:
            return
        logger.warning("Integrity warning: %s", warning)
        self.warnings.append(warning)
        collected.append(warning)
        if self.on_warning is not None:
            self.on_warning(warning)

    def _fail(self, error: TransitionError, warnings: Optional[List[Any]] = None) -> TransitionResult:
        failure = error.to_failure()
        if failure.blocking:
            self.blocking_error = failure
        logger.warning("Transition rejected (%s): %s", failure.kind.value, failure.message)
        return TransitionResult(document=self.document, failure=failure, warnings=warnings or [])

    def _commit(self, document: Document, warnings: Optional[List[Any]] = None) -> TransitionResult:
        previous = self.document.stage
        self.document = document
        if document.stage != previous:
            logger.info("Workflow moved from %s to %s", previous.value, document.stage.value)
        if self.autosave_enabled and document.stage != Stage.INITIAL_CHOICE:
            self.scheduler.arm(document)
        return TransitionResult(document=document, warnings=warnings or [])

    def _blocked(self) -> Optional[TransitionResult]:
        if self.blocking_error is None:
            return None
        return TransitionResult(
            document=self.document,
            failure=TransitionFailure(
                kind=FailureKind.STATE,
                message="The workflow is blocked by an error. Start over to continue.",
            ),
        )

    def _apply(self, transition: Callable[..., Document], *args: Any,
               warnings: Optional[List[Any]] = None) -> TransitionResult:
        blocked = self._blocked()
        if blocked:
            return blocked
        try:
            document = transition(self.document, *args)
        except TransitionError as e:
            return self._fail(e, warnings)
        return self._commit(document, warnings)

    async def _run(
        self,
        fetch: Callable[[List[Any]], Awaitable[Any]],
        apply: Callable[[Document, Any], Document],
        expected_stage: Stage,
    ) -> TransitionResult:
        """Await collaborator calls, then apply the result to the current document.

        The stage and epoch are captured before awaiting; if either changed by
        the time the response arrives, the result is discarded.
        """
        blocked = self._blocked()
        if blocked:
            return blocked
        if self.document.stage != expected_stage:
            return self._fail(InvalidStageError(
                f"Action requires stage '{expected_stage.value}', "
                f"workflow is at '{self.document.stage.value}'"
            ))

        epoch = self._epoch
        warnings: List[Any] = []
        try:
            payload = await fetch(warnings)
        except CollaboratorError as e:
            self._warn(e.integrity_warning, warnings)
            failure = TransitionFailure(kind=e.kind, message=e.message)
            logger.error("Collaborator failure (%s): %s", e.kind.value, e.message)
            return TransitionResult(document=self.document, failure=failure, warnings=warnings)
        except TransitionError as e:
            return self._fail(e, warnings)

        if self._epoch != epoch or self.document.stage != expected_stage:
            return self._fail(
                StaleResultError("The workflow moved on before the response arrived"), warnings
            )
        return self._apply(lambda document: apply(document, payload), warnings=warnings)

    # Entry

    async def start_fresh(self) -> TransitionResult:
        """Start a new SSP from a catalogue."""
        return self._apply(transitions.start_fresh)

    async def load_existing(self, raw: Union[str, bytes, Dict[str, Any]]) -> TransitionResult:
        """Continue from a previously exported SSP."""

        async def fetch(warnings: List[Any]):
            ssp = transitions.parse_uploaded_ssp(raw)
            reference = await self.client.extract_catalog_from_ssp(ssp)
            self._warn(reference.integrity_warning, warnings)
            return ssp, reference

        return await self._run(
            fetch,
            lambda document, payload: transitions.begin_resume(document, *payload),
            Stage.INITIAL_CHOICE,
        )

    # Catalogue decision

    async def select_catalogue(self, url: str, classification: Optional[str] = None) -> TransitionResult:
        """Pick a catalogue when starting fresh."""
        if not url or not url.strip():
            return self._fail(InputError("Please enter a catalogue URL"))

        async def fetch(warnings: List[Any]):
            return await self.client.fetch_catalogue(url)

        return await self._run(
            fetch,
            lambda document, fetched: transitions.select_catalogue(
                document, url, fetched, classification
            ),
            Stage.CATALOGUE_DECISION,
        )

    async def keep_existing_catalogue(self) -> TransitionResult:
        """Re-load the uploaded SSP against the catalogue it references."""
        existing_ssp = self.document.existing_ssp
        catalogue_url = self.document.existing_catalogue_ref

        async def fetch(warnings: List[Any]):
            if existing_ssp is None or not catalogue_url:
                raise InvalidStageError("Keeping the catalogue requires an uploaded SSP")
            fetched = await self.client.fetch_catalogue(catalogue_url)
            extraction = await self.client.extract_controls_from_ssp(
                fetched.catalogue_controls(), existing_ssp
            )
            self._warn(extraction.integrity_warning, warnings)
            return fetched, extraction

        return await self._run(
            fetch,
            lambda document, payload: transitions.keep_existing_catalogue(document, *payload),
            Stage.CATALOGUE_DECISION,
        )

    async def update_catalogue(self, url: str, classification: Optional[str] = None) -> TransitionResult:
        """Move the uploaded SSP onto another catalogue version."""
        existing_ssp = self.document.existing_ssp
        if not url or not url.strip():
            return self._fail(InputError("Please enter a catalogue URL"))

        async def fetch(warnings: List[Any]):
            if existing_ssp is None:
                raise InvalidStageError("Updating the catalogue requires an uploaded SSP")
            fetched = await self.client.fetch_catalogue(url)
            comparison = await self.client.compare_ssp(
                fetched.catalogue_controls(), existing_ssp, fetched.catalogue
            )
            self._warn(comparison.integrity_warning, warnings)
            return fetched, comparison

        return await self._run(
            fetch,
            lambda document, payload: transitions.update_catalogue(
                document, url, payload[0], payload[1], classification
            ),
            Stage.CATALOGUE_DECISION,
        )

    # Bulk import

    async def import_ccm(self, file_data: bytes) -> TransitionResult:
        """Merge a Cloud Control Matrix spreadsheet into the catalogue controls."""
        if not file_data:
            return self._fail(InputError("Please select a file first"))

        async def fetch(warnings: List[Any]):
            return await self.client.import_ccm(file_data)

        return await self._run(fetch, transitions.apply_bulk_import, Stage.BULK_IMPORT)

    async def skip_bulk_import(self) -> TransitionResult:
        return self._apply(transitions.skip_bulk_import)

    # System info and controls

    async def submit_system_info(self, info: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """Record system information and continue to control editing."""
        return self._apply(transitions.submit_system_info, info)

    async def update_system_info(self, changes: Dict[str, Any]) -> TransitionResult:
        return self._apply(transitions.update_system_info, changes)

    async def update_control(self, control_id: str, changes: Dict[str, Any]) -> TransitionResult:
        return self._apply(transitions.update_control, control_id, changes)

    async def fetch_evidence(self, control_id: str) -> TransitionResult:
        """Fetch automated evidence for a control and record it in its history.

        Fetch failures are recorded as failed entries, not reported as a
        failed transition.
        """
        control = self.document.find_control(control_id)
        if self.document.stage == Stage.CONTROL_EDITING and control is not None:
            if not control.api_url:
                return self._fail(InputError("Please enter an API URL first."))
        api_url = control.api_url if control is not None else None

        async def fetch(warnings: List[Any]):
            if api_url is None:
                raise InputError(f"Unknown control: {control_id}")
            gateways = await self.store.load_gateway_config()
            return await fetch_evidence(api_url, gateways, self.client)

        return await self._run(
            fetch,
            lambda document, entry: transitions.record_evidence(
                document, control_id, entry, self.evidence_history_limit
            ),
            Stage.CONTROL_EDITING,
        )

    # Lifecycle

    async def _reset(self, document: Optional[Document] = None) -> None:
        # An auto-save already writing must land before the store is touched again
        await self.scheduler.settle()
        self.document = document or transitions.new_document()
        self.blocking_error = None
        self.warnings = []
        self._epoch += 1

    async def start_over(self) -> TransitionResult:
        """Save pending work, then return to the initial choice."""
        await self.scheduler.flush()
        await self._reset()
        logger.info("Workflow reset to %s", self.document.stage.value)
        return TransitionResult(document=self.document)

    async def restore(self) -> TransitionResult:
        """Resume the last saved document at the stage it was saved in."""
        snapshot = await self.store.load()
        if snapshot is None:
            return self._fail(InputError("No saved data to load"))
        await self._reset(snapshot.document)
        self.last_save_time = snapshot.last_modified
        logger.info("Restored saved document at %s", self.document.stage.value)
        return TransitionResult(document=self.document)

    async def save_now(self) -> SaveResult:
        """Save the current document immediately."""
        await self.scheduler.settle()
        result = await self.store.save(self.document)
        self._record_save(result)
        return result

    async def clear_saved_data(self) -> bool:
        """Delete the saved document and reset the workflow."""
        await self._reset()
        self.last_save_time = None
        return await self.store.clear()

    async def shutdown(self) -> None:
        """Write any pending auto-save and wait for one already writing."""
        await self.scheduler.flush()

    def summary(self) -> Dict[str, Any]:
        """Describe the session for status displays."""
        return {
            "stage": self.document.stage.value,
            "stage_title": STAGE_TITLES[self.document.stage],
            "entry_branch": self.document.entry_branch.value if self.document.entry_branch else None,
            "catalogue_url": self.document.catalogue_ref,
            "existing_catalogue_url": self.document.existing_catalogue_ref,
            "system_name": self.document.system_info.system_name,
            "control_count": len(self.document.controls),
            "comparison_stats": self.document.comparison_stats,
            "warnings": self.warnings,
            "blocking_error": self.blocking_error.model_dump(mode="json") if self.blocking_error else None,
            "last_save_time": self.last_save_time.isoformat() if self.last_save_time else None,
            "autosave_pending": self.scheduler.pending or self.scheduler.writing,
        }
