from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Optional, Protocol

from .atomic_store import AtomicStateStore

log = logging.getLogger(__name__)

DRIVER_MEMORY = "memory"
DRIVER_JSON = "json"


class StateStore(Protocol):
    def load(self) -> Optional[Dict[str, Any]]: ...

    def save(self, state: Dict[str, Any]) -> None: ...


class MemoryStateStore:
    """
    Keeps a deep copy of the last saved snapshot. Used by tests and for
    throwaway nodes; nothing survives the process.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._snapshot = copy.deepcopy(initial) if initial is not None else None
        self.saves = 0

    def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot) if self._snapshot is not None else None

    def save(self, state: Dict[str, Any]) -> None:
        self._snapshot = copy.deepcopy(state)
        self.saves += 1


def open_store(persistence: Dict[str, Any]) -> StateStore:
    """Build a store from the ``persistence`` config section."""
    driver = str(persistence.get("driver", DRIVER_MEMORY)).strip().lower()
    if driver == DRIVER_MEMORY:
        return MemoryStateStore()
    if driver == DRIVER_JSON:
        store = AtomicStateStore(
            data_dir=persistence.get("data_dir", "data"),
            filename=persistence.get("filename", "karma_state.json"),
            keep_backups=int(persistence.get("keep_backups", 2)),
        )
        log.info("using JSON snapshot store at %s", store.path)
        return store
    raise ValueError(f"unknown persistence driver: {driver!r}")
