"""Display sets derived from the record store."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List

from ..domain.errors import StorageCorrupt
from ..domain.models import Lifecycle, Record
from ..logging import get_logger
from .store import RecordStore

LOG = get_logger("orchestrator-views")


class ViewMode(str, Enum):
    PENDING_ANALYSIS = "pending_analysis"
    PENDING_SAVE = "pending_save"

    def other(self) -> "ViewMode":
        if self is ViewMode.PENDING_ANALYSIS:
            return ViewMode.PENDING_SAVE
        return ViewMode.PENDING_ANALYSIS


def pending_analysis(records: Iterable[Record]) -> List[Record]:
    return [r for r in records if r.lifecycle is Lifecycle.UNANALYZED]


def pending_save(records: Iterable[Record]) -> List[Record]:
    return [r for r in records if r.lifecycle is Lifecycle.ANALYZED_UNSAVED]


def saved(records: Iterable[Record]) -> List[Record]:
    return [r for r in records if r.lifecycle is Lifecycle.SAVED]


_SELECTORS = {
    ViewMode.PENDING_ANALYSIS: pending_analysis,
    ViewMode.PENDING_SAVE: pending_save,
}


class ViewProjection:
    """Switches between the pending-analysis and pending-save sets.

    Every read goes back to the store so records changed by a concurrent run
    are never shown stale.
    """

    def __init__(self, store: RecordStore, mode: ViewMode = ViewMode.PENDING_ANALYSIS) -> None:
        self.store = store
        self.mode = mode

    def _load(self) -> List[Record]:
        try:
            return self.store.load_all()
        except StorageCorrupt as exc:
            LOG.warning(f"Record store unreadable; showing an empty view: {exc}")
            return []

    def current(self) -> List[Record]:
        return _SELECTORS[self.mode](self._load())

    def toggle(self) -> List[Record]:
        self.mode = self.mode.other()
        LOG.debug(f"View switched to {self.mode.value}")
        return self.current()

    def select(self, mode: ViewMode) -> List[Record]:
        self.mode = mode
        return self.current()

    def counts(self) -> Dict[str, int]:
        records = self._load()
        return {
            "pending_analysis": len(pending_analysis(records)),
            "pending_save": len(pending_save(records)),
            "saved": len(saved(records)),
            "total": len(records),
        }
