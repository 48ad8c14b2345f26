"""Data models for the SSP workflow workbench."""

from .evidence import (
    EvidenceEntry,
    GatewayEndpoint,
    GatewayConfig
)
from .document import (
    Stage,
    EntryBranch,
    ControlStatus,
    Control,
    SystemInfo,
    Document
)
from .persistence import (
    SCHEMA_VERSION,
    PersistedSnapshot,
    SaveHistoryRecord,
    SaveResult
)
from .collaborators import (
    CatalogueReference,
    FetchedCatalogue,
    ComparisonResult,
    ExtractionResult,
    ProxyResponse,
    CCMImportResult
)

__all__ = [
    "EvidenceEntry",
    "GatewayEndpoint",
    "GatewayConfig",
    "Stage",
    "EntryBranch",
    "ControlStatus",
    "Control",
    "SystemInfo",
    "Document",
    "SCHEMA_VERSION",
    "PersistedSnapshot",
    "SaveHistoryRecord",
    "SaveResult",
    "CatalogueReference",
    "FetchedCatalogue",
    "ComparisonResult",
    "ExtractionResult",
    "ProxyResponse",
    "CCMImportResult",
]
