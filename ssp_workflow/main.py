"""FastAPI application for the SSP workflow workbench."""

import logging
from typing import Dict, Any, Optional

from fastapi import FastAPI, UploadFile, File, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from ssp_workflow.config import WorkbenchConfig, get_config
from ssp_workflow.models.evidence import GatewayConfig
from ssp_workflow.models.results import FailureKind, TransitionResult
from ssp_workflow.utils.collaborator_client import CollaboratorClient, CollaboratorConfig
from ssp_workflow.utils.logging import configure_logging
from ssp_workflow.utils.storage import FileBackend, PersistenceStore, format_bytes
from ssp_workflow.workflow.session import WorkflowSession

logger = logging.getLogger(__name__)

app = FastAPI(
    title="SSP Workflow Workbench",
    description="Guided assembly of System Security Plans from control catalogues",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_KIND = {
    FailureKind.INPUT: 400,
    FailureKind.PARSE: 400,
    FailureKind.STATE: 409,
    FailureKind.STALE: 409,
    FailureKind.INVARIANT: 409,
    FailureKind.NETWORK: 502,
    FailureKind.COLLABORATOR: 502,
}

# The local user's workbench; created on first use
session: Optional[WorkflowSession] = None


def build_session(config: WorkbenchConfig) -> WorkflowSession:
    """Wire a session to the file-backed store and the collaborator API."""
    backend = FileBackend(config.storage_dir)
    store = PersistenceStore(
        backend,
        max_snapshot_bytes=config.max_snapshot_bytes,
        history_limit=config.save_history_limit,
        clear_retry_attempts=config.clear_retry_attempts,
    )
    client = CollaboratorClient(
        CollaboratorConfig(base_url=config.api_base_url, timeout=config.request_timeout)
    )
    return WorkflowSession(
        store,
        client,
        autosave_enabled=config.autosave_enabled,
        autosave_delay=config.autosave_delay_seconds,
        evidence_history_limit=config.evidence_history_limit,
    )


def _get_session() -> WorkflowSession:
    global session
    if session is None:
        session = build_session(get_config())
    return session


def _respond(result: TransitionResult) -> Dict[str, Any]:
    """Turn a transition result into a response body, or raise on failure."""
    if result.failure is not None:
        detail = {
            "kind": result.failure.kind.value,
            "message": result.failure.message,
            "blocking": result.failure.blocking,
        }
        if result.warnings:
            detail["warnings"] = result.warnings
        raise HTTPException(status_code=STATUS_BY_KIND[result.failure.kind], detail=detail)
    return {
        "stage": result.stage.value,
        "warnings": result.warnings,
        "document": result.document.to_wire(),
    }


@app.on_event("startup")
async def startup() -> None:
    """Configure logging and offer to resume saved work."""
    config = get_config()
    configure_logging(config.log_level)
    workbench = _get_session()
    if await workbench.store.has_saved_data():
        logger.info("Saved SSP data found; POST /api/v1/storage/restore to resume")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Write any pending auto-save and close the collaborator client."""
    if session is not None:
        await session.shutdown()
        await session.client.aclose()


# Request Models
class LoadExistingRequest(BaseModel):
    """Uploaded SSP, as a JSON object or the raw file text."""

    ssp: Any


class CatalogueRequest(BaseModel):
    """Catalogue selection model."""

    url: str
    classification: Optional[str] = None


class FieldChanges(BaseModel):
    """Partial update of system info or a control."""

    changes: Dict[str, Any]


class BackupImportRequest(BaseModel):
    backup: Any


# Endpoints
@app.get("/")
async def root():
    """Service info."""
    return {
        "service": "SSP Workflow Workbench",
        "version": "0.1.0",
        "status": "operational",
        "documentation": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "ssp-workflow"}


@app.get("/api/v1/workflow")
async def workflow_status():
    """Current stage, branch, counts, warnings and last save time."""
    return _get_session().summary()


@app.post("/api/v1/workflow/start-fresh")
async def start_fresh():
    return _respond(await _get_session().start_fresh())


@app.post("/api/v1/workflow/load-existing")
async def load_existing(payload: LoadExistingRequest):
    """Upload a previously exported SSP."""
    return _respond(await _get_session().load_existing(payload.ssp))


@app.post("/api/v1/workflow/catalogue/select")
async def select_catalogue(payload: CatalogueRequest):
    return _respond(await _get_session().select_catalogue(payload.url, payload.classification))


@app.post("/api/v1/workflow/catalogue/keep")
async def keep_catalogue():
    return _respond(await _get_session().keep_existing_catalogue())


@app.post("/api/v1/workflow/catalogue/update")
async def update_catalogue(payload: CatalogueRequest):
    return _respond(await _get_session().update_catalogue(payload.url, payload.classification))


@app.post("/api/v1/workflow/import/ccm")
async def import_ccm(file: UploadFile = File(...)):
    """Upload a Cloud Control Matrix spreadsheet."""
    filename = file.filename or ""
    if not filename.lower().endswith(".xlsx"):
        raise HTTPException(status_code=400, detail="Please upload an Excel (.xlsx) file")
    content = await file.read()
    return _respond(await _get_session().import_ccm(content))


@app.post("/api/v1/workflow/import/skip")
async def skip_import():
    return _respond(await _get_session().skip_bulk_import())


@app.post("/api/v1/workflow/system-info")
async def submit_system_info(payload: Optional[FieldChanges] = None):
    """Submit system info and continue to control editing."""
    changes = payload.changes if payload else None
    return _respond(await _get_session().submit_system_info(changes))


@app.patch("/api/v1/workflow/system-info")
async def update_system_info(payload: FieldChanges):
    return _respond(await _get_session().update_system_info(payload.changes))


@app.get("/api/v1/workflow/controls")
async def list_controls():
    """List controls of the current document."""
    document = _get_session().document
    return {
        "stage": document.stage.value,
        "total": len(document.controls),
        "controls": [control.to_wire() for control in document.controls],
    }


@app.patch("/api/v1/workflow/controls/{control_id}")
async def update_control(control_id: str, payload: FieldChanges):
    return _respond(await _get_session().update_control(control_id, payload.changes))


@app.post("/api/v1/workflow/controls/{control_id}/evidence")
async def fetch_evidence(control_id: str):
    """Fetch evidence for a control through the configured gateway."""
    result = await _get_session().fetch_evidence(control_id)
    body = _respond(result)
    control = result.document.find_control(control_id)
    latest = control.evidence_history[0] if control and control.evidence_history else None
    body["evidence"] = latest.model_dump(mode="json") if latest else None
    return body


@app.post("/api/v1/workflow/start-over")
async def start_over():
    return _respond(await _get_session().start_over())


@app.get("/api/v1/storage")
async def storage_status():
    """Saved-data status and size."""
    store = _get_session().store
    size = await store.storage_size()
    last_save = await store.last_save_time()
    return {
        "has_saved_data": await store.has_saved_data(),
        "last_save_time": last_save.isoformat() if last_save else None,
        "size_bytes": size,
        "size": format_bytes(size),
    }


@app.post("/api/v1/storage/save")
async def save_now():
    result = await _get_session().save_now()
    return result.model_dump(mode="json")


@app.post("/api/v1/storage/restore")
async def restore():
    return _respond(await _get_session().restore())


@app.delete("/api/v1/storage")
async def clear_storage():
    """Delete saved data and reset the workflow."""
    cleared = await _get_session().clear_saved_data()
    return {"cleared": cleared}


@app.get("/api/v1/storage/history")
async def save_history():
    entries = await _get_session().store.history_entries()
    return {"history": [entry.to_wire() for entry in entries]}


@app.get("/api/v1/storage/backup")
async def export_backup():
    """Download the saved snapshot as JSON."""
    backup = await _get_session().store.export_backup()
    if backup is None:
        raise HTTPException(status_code=404, detail="No saved data to export")
    return PlainTextResponse(
        backup,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="ssp_backup.json"'},
    )


@app.post("/api/v1/storage/backup")
async def import_backup(payload: BackupImportRequest):
    """Import a backup into storage. Use restore to load it."""
    result = await _get_session().store.import_backup(payload.backup)
    if result.reason == "invalid":
        raise HTTPException(status_code=400, detail="Invalid backup file")
    return result.model_dump(mode="json")


@app.get("/api/v1/settings/gateways")
async def get_gateways():
    config = await _get_session().store.load_gateway_config()
    return config.model_dump()


@app.put("/api/v1/settings/gateways")
async def put_gateways(config: GatewayConfig, request: Request):
    """Store API gateway settings."""
    await _get_session().store.save_gateway_config(config)
    logger.info(
        "API gateway settings updated (aws=%s, azure=%s) from %s",
        config.aws.enabled,
        config.azure.enabled,
        request.client.host if request.client else "unknown",
    )
    return config.model_dump()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
