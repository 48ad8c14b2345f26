"""Automated evidence collection for controls."""

from .history import EvidenceLedger, record_fetch, EVIDENCE_HISTORY_LIMIT
from .gateway import resolve, GatewayRoute, GatewayNotConfiguredError
from .fetcher import fetch_evidence

__all__ = [
    "EvidenceLedger",
    "record_fetch",
    "EVIDENCE_HISTORY_LIMIT",
    "resolve",
    "GatewayRoute",
    "GatewayNotConfiguredError",
    "fetch_evidence",
]
