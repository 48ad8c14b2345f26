"""Shared fixtures: an in-memory store and a fake collaborator API."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from ssp_workflow.utils.collaborator_client import CollaboratorClient
from ssp_workflow.utils.storage import MemoryBackend, PersistenceStore
from ssp_workflow.workflow.session import WorkflowSession

CATALOGUE_URL = "https://example.org/catalogues/itsg33-v1.json"
CATALOGUE_V2_URL = "https://example.org/catalogues/itsg33-v2.json"

EXISTING_SSP = {
    "system-security-plan": {
        "uuid": "8f1c3c9e-0001",
        "metadata": {"title": "Payroll SSP"},
        "import-profile": {"href": CATALOGUE_URL},
    }
}


def catalogue_controls() -> List[Dict[str, Any]]:
    return [
        {"id": "ac-1", "title": "Policy and Procedures", "groupId": "ac", "groupTitle": "Access Control"},
        {"id": "ac-2", "title": "Account Management", "groupId": "ac", "groupTitle": "Access Control"},
        {
            "id": "ac-2.1",
            "title": "Automated Account Management",
            "groupId": "ac",
            "groupTitle": "Access Control",
            "parentId": "ac-2",
        },
    ]


def catalogue_body(url: str = CATALOGUE_URL) -> Dict[str, Any]:
    return {
        "catalogue": {"uuid": "cat-1", "metadata": {"title": "ITSG-33"}, "href": url},
        "controls": catalogue_controls(),
        "metadata": {"title": "ITSG-33"},
    }


Handler = Callable[[Dict[str, Any]], Tuple[int, Any]]


class SlowBackend(MemoryBackend):
    """Memory backend whose writes yield to the event loop, as file IO does."""

    def __init__(self, write_delay: float):
        super().__init__()
        self.write_delay = write_delay

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(self.write_delay)
        await super().set(key, value)


class FakeCollaboratorAPI:
    """Routes /api/<endpoint> requests to per-endpoint handlers."""

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.routes: Dict[str, Handler] = {
            "extract-catalog-from-ssp": lambda body: (200, {"catalogUrl": CATALOGUE_URL}),
            "fetch-catalogue": lambda body: (200, catalogue_body(body["url"])),
            "extract-controls-from-ssp": lambda body: (
                200,
                {
                    "controls": [
                        {**c, "status": "effective", "implementation": "Handled by IAM"}
                        for c in body["catalogControls"]
                    ],
                    "systemInfo": {"systemName": "Payroll", "systemId": "PAY-01"},
                    "classification": "protected-b",
                },
            ),
            "compare-ssp": lambda body: (
                200,
                {
                    "controls": [
                        {**c, "changeStatus": "unchanged" if c["id"] != "ac-2.1" else "new"}
                        for c in body["catalogControls"]
                    ],
                    "stats": {"new": 1, "changed": 0, "unchanged": 2},
                    "systemInfo": {"systemName": "Payroll"},
                },
            ),
            "import-ccm": lambda body: (
                200,
                {
                    "success": True,
                    "controls": [
                        {"id": "ac-1", "implementation": "Annual policy review", "status": "effective"},
                        {"id": "ac-2", "groupId": "zz", "remarks": "From CCM"},
                    ],
                    "systemInfo": {"systemName": "CCM System"},
                    "statistics": {"totalControls": 2, "withImplementation": 1, "withStatus": 1},
                },
            ),
            "proxy-fetch": lambda body: (200, {"success": True, "status": 200, "data": {"ok": 1}}),
        }
        self.before_response: Dict[str, Callable[[], Any]] = {}

    def route(self, endpoint: str, status: int, body: Any) -> None:
        self.routes[endpoint] = lambda request_body: (status, body)

    def endpoints(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content) if request.content else {}
        self.calls.append((endpoint, body))

        hook = self.before_response.get(endpoint)
        if hook is not None:
            await hook()

        status, payload = self.routes[endpoint](body)
        if isinstance(payload, (bytes, str)):
            return httpx.Response(status, content=payload)
        return httpx.Response(status, json=payload)


@pytest.fixture
def api():
    """Fake collaborator API."""
    return FakeCollaboratorAPI()


@pytest.fixture
def client(api):
    """Collaborator client talking to the fake API."""
    return CollaboratorClient(transport=httpx.MockTransport(api.handler))


@pytest.fixture
def store():
    """Persistence store over an in-memory backend."""
    return PersistenceStore(MemoryBackend())


@pytest.fixture
def session(store, client):
    """Workflow session with auto-save disabled."""
    return WorkflowSession(store, client, autosave_enabled=False)
