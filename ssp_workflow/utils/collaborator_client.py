"""HTTP client for the SSP collaborator API."""

import base64
import logging
from typing import Optional, Dict, Any, List, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ssp_workflow.models.collaborators import (
    CatalogueReference,
    FetchedCatalogue,
    ComparisonResult,
    ExtractionResult,
    ProxyResponse,
    CCMImportResult,
)
from ssp_workflow.models.results import FailureKind

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CollaboratorError(Exception):
    """Raised when a collaborator call fails."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        integrity_warning: Optional[Any] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.integrity_warning = integrity_warning
        self.status_code = status_code


class CollaboratorConfig(BaseModel):
    """Collaborator API configuration."""

    base_url: str = "http://localhost:3001"
    timeout: float = 60.0


class CollaboratorClient:
    """Wrapper for the catalogue, comparison, import and proxy endpoints."""

    def __init__(
        self,
        config: Optional[CollaboratorConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize collaborator client."""
        self.config = config or CollaboratorConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "CollaboratorClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(f"/api/{endpoint}", json=payload)
        except httpx.HTTPError as e:
            logger.error("Request to %s failed: %s", endpoint, e)
            raise CollaboratorError(FailureKind.NETWORK, f"Could not reach {endpoint}: {e}") from e

    async def _call(self, endpoint: str, payload: Dict[str, Any], model: Type[ModelT]) -> ModelT:
        response = await self._post_json(endpoint, payload)

        try:
            body = response.json()
        except ValueError:
            body = None
        warning = body.get("integrityWarning") if isinstance(body, dict) else None

        if response.is_error:
            message = None
            if isinstance(body, dict):
                message = body.get("error") or body.get("message")
            message = message or f"{endpoint} failed with HTTP {response.status_code}"
            logger.error("%s returned %s: %s", endpoint, response.status_code, message)
            raise CollaboratorError(
                FailureKind.COLLABORATOR,
                message,
                integrity_warning=warning,
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            raise CollaboratorError(
                FailureKind.PARSE, f"{endpoint} returned a non-JSON response",
                status_code=response.status_code,
            )
        try:
            return model.model_validate(body)
        except ValidationError as e:
            logger.error("Unexpected %s response: %s", endpoint, e.errors()[:1])
            raise CollaboratorError(
                FailureKind.PARSE,
                f"{endpoint} returned an unexpected response",
                integrity_warning=warning,
                status_code=response.status_code,
            ) from e

    async def extract_catalog_from_ssp(self, ssp: Dict[str, Any]) -> CatalogueReference:
        """Find the catalogue URL an existing SSP was built from."""
        return await self._call("extract-catalog-from-ssp", {"sspData": ssp}, CatalogueReference)

    async def fetch_catalogue(self, url: str) -> FetchedCatalogue:
        """Fetch a catalogue and its flattened controls."""
        return await self._call("fetch-catalogue", {"url": url}, FetchedCatalogue)

    async def compare_ssp(
        self,
        catalog_controls: List[Dict[str, Any]],
        existing_ssp: Dict[str, Any],
        catalog_data: Dict[str, Any],
    ) -> ComparisonResult:
        """Diff an existing SSP against a new catalogue version."""
        return await self._call(
            "compare-ssp",
            {
                "catalogControls": catalog_controls,
                "existingSSP": existing_ssp,
                "catalogData": catalog_data,
            },
            ComparisonResult,
        )

    async def extract_controls_from_ssp(
        self, catalog_controls: List[Dict[str, Any]], existing_ssp: Dict[str, Any]
    ) -> ExtractionResult:
        """Re-hydrate catalogue controls with the values of an existing SSP."""
        return await self._call(
            "extract-controls-from-ssp",
            {"catalogControls": catalog_controls, "existingSSP": existing_ssp},
            ExtractionResult,
        )

    async def import_ccm(self, file_data: bytes) -> CCMImportResult:
        """Parse a Cloud Control Matrix spreadsheet."""
        encoded = base64.b64encode(file_data).decode("ascii")
        return await self._call("import-ccm", {"fileData": encoded}, CCMImportResult)

    async def proxy_fetch(
        self, url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None
    ) -> ProxyResponse:
        """Fetch a URL through the server-side proxy.

        The proxy reports upstream failures in its body, so any response
        carrying a ``success`` flag is returned rather than raised.
        """
        response = await self._post_json(
            "proxy-fetch", {"url": url, "method": method, "headers": headers or {}}
        )
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and "success" in body:
            try:
                return ProxyResponse.model_validate(body)
            except ValidationError as e:
                raise CollaboratorError(
                    FailureKind.PARSE, "proxy-fetch returned an unexpected response"
                ) from e

        raise CollaboratorError(
            FailureKind.COLLABORATOR,
            f"proxy-fetch failed with HTTP {response.status_code}",
            status_code=response.status_code,
        )
