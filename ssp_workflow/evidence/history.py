"""Per-control evidence history with one entry per calendar day."""

from collections import OrderedDict
from datetime import date
from typing import Iterable, List

from ssp_workflow.models.document import Control
from ssp_workflow.models.evidence import EvidenceEntry

EVIDENCE_HISTORY_LIMIT = 12


class EvidenceLedger:
    """Day-keyed evidence entries.

    Recording an entry for a day that already has one replaces it; the most
    recent write for a day always wins, whether it succeeded or failed.
    """

    def __init__(self, entries: Iterable[EvidenceEntry] = (), limit: int = EVIDENCE_HISTORY_LIMIT):
        self.limit = limit
        self._by_day: "OrderedDict[date, EvidenceEntry]" = OrderedDict()
        # Oldest first so that later same-day entries overwrite earlier ones
        for entry in sorted(entries, key=lambda e: e.timestamp):
            self._by_day[entry.date_key] = entry

    def record(self, entry: EvidenceEntry) -> None:
        """Insert an entry, replacing any entry from the same day."""
        self._by_day.pop(entry.date_key, None)
        self._by_day[entry.date_key] = entry

    def __len__(self) -> int:
        return min(len(self._by_day), self.limit)

    def finalize(self) -> List[EvidenceEntry]:
        """Newest-first entries, capped at the ledger limit."""
        ordered = sorted(self._by_day.values(), key=lambda e: e.timestamp, reverse=True)
        return ordered[: self.limit]


def record_fetch(
    control: Control, entry: EvidenceEntry, limit: int = EVIDENCE_HISTORY_LIMIT
) -> Control:
    """Return a copy of the control with the fetch result recorded in its history."""
    ledger = EvidenceLedger(control.evidence_history, limit=limit)
    ledger.record(entry)
    return control.model_copy(update={"evidence_history": ledger.finalize()})
