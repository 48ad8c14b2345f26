"""Utility functions for the SSP workflow workbench."""

from .collaborator_client import CollaboratorClient, CollaboratorConfig, CollaboratorError
from .storage import PersistenceStore, SaveHistoryLedger, FileBackend, MemoryBackend

__all__ = [
    "CollaboratorClient",
    "CollaboratorConfig",
    "CollaboratorError",
    "PersistenceStore",
    "SaveHistoryLedger",
    "FileBackend",
    "MemoryBackend",
]
