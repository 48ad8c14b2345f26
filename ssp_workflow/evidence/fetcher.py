"""Fetch automated evidence for a control through the configured gateway."""

import logging
from datetime import datetime, timezone
from typing import Callable

from ssp_workflow.models.evidence import EvidenceEntry, GatewayConfig
from ssp_workflow.utils.collaborator_client import CollaboratorClient, CollaboratorError
from .gateway import resolve, GatewayNotConfiguredError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def fetch_evidence(
    api_url: str,
    gateways: GatewayConfig,
    client: CollaboratorClient,
    clock: Callable[[], datetime] = _utcnow,
) -> EvidenceEntry:
    """
    Fetch evidence from an API and describe the outcome as a history entry.

    Failures never raise; they come back as an entry with ``success=False``.

    Args:
        api_url: Evidence endpoint configured on the control
        gateways: Configured outbound gateways
        client: Collaborator client used to reach the proxy
        clock: Source of the entry timestamp

    Returns:
        EvidenceEntry describing the fetch
    """
    try:
        route = resolve(gateways, api_url)
        # The gateway handles authentication, so no custom headers are sent
        response = await client.proxy_fetch(route.url, method="GET", headers={})
    except GatewayNotConfiguredError as e:
        logger.warning("Evidence fetch for %s skipped: %s", api_url, e)
        return EvidenceEntry.failed(str(e), timestamp=clock())
    except CollaboratorError as e:
        logger.error("Evidence fetch for %s failed: %s", api_url, e.message)
        return EvidenceEntry.failed(e.message, status=e.status_code, timestamp=clock())

    if not response.success:
        message = response.error or "Failed to fetch data through proxy"
        logger.warning("Evidence fetch for %s failed: %s", api_url, message)
        return EvidenceEntry.failed(message, status=response.status, timestamp=clock())

    return EvidenceEntry.succeeded(response.data, status=response.status, timestamp=clock())
