"""Response contracts of the collaborator API."""

from typing import Optional, List, Dict, Any

from pydantic import Field

from .document import WireModel, Control, SystemInfo


class CatalogueReference(WireModel):
    """Result of extract-catalog-from-ssp."""

    catalog_url: str = Field(..., min_length=1, description="Catalogue the SSP was built from")
    integrity_warning: Optional[Any] = None


class FetchedCatalogue(WireModel):
    """Result of fetch-catalogue."""

    catalogue: Dict[str, Any] = Field(..., description="Raw catalogue document")
    controls: List[Control] = Field(default_factory=list, description="Flattened controls")
    metadata: Optional[Dict[str, Any]] = None

    def catalogue_controls(self) -> List[Dict[str, Any]]:
        """Controls in the form the comparison endpoints expect."""
        return [control.to_wire() for control in self.controls]


class ComparisonResult(WireModel):
    """Result of compare-ssp."""

    controls: List[Control] = Field(default_factory=list)
    stats: Optional[Dict[str, Any]] = None
    system_info: Optional[SystemInfo] = None
    integrity_warning: Optional[Any] = None


class ExtractionResult(WireModel):
    """Result of extract-controls-from-ssp."""

    controls: List[Control] = Field(default_factory=list)
    system_info: Optional[SystemInfo] = None
    classification: Optional[str] = None
    integrity_warning: Optional[Any] = None


class ProxyResponse(WireModel):
    """Result of proxy-fetch."""

    success: bool
    status: Optional[int] = None
    data: Optional[Any] = None
    error: Optional[str] = None


class ImportStatistics(WireModel):
    """Statistics reported by a CCM import."""

    total_controls: int = 0
    with_implementation: int = 0
    with_status: int = 0


class CCMImportResult(WireModel):
    """Result of import-ccm."""

    success: bool = True
    controls: List[Dict[str, Any]] = Field(
        default_factory=list, description="Imported field values keyed by control id"
    )
    system_info: Optional[Dict[str, Any]] = None
    statistics: ImportStatistics = Field(default_factory=ImportStatistics)
