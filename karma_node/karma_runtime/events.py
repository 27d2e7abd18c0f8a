from __future__ import annotations

"""
Audit event log.

Events live in ``state["events"]`` as plain dicts so they persist with the
rest of the snapshot:

    {
        "id": "<hex>",
        "name": "ContributionAdded",
        "ts": 1700000000,
        "payload": {...},
    }

Subscribers are in-process callbacks (the presentation layer, tests, ...).
A failing subscriber is logged and skipped; it never aborts the mutation
that emitted the event.

The engine opens a per-thread buffer around each write. Events emitted
inside it reach the log and the subscribers only once the write has been
saved; a write that fails drops them.
"""

import logging
import secrets
import threading
import time
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

CONTRIBUTION_ADDED = "ContributionAdded"
KARMA_CALCULATED = "KarmaCalculated"
ACCESS_GRANTED = "AccessGranted"
ACCESS_DENIED = "AccessDenied"
ACCESS_RULE_ADDED = "AccessRuleAdded"
ACCESS_RULE_DEACTIVATED = "AccessRuleDeactivated"
DAO_INTEGRATION_ADDED = "DaoIntegrationAdded"
DAO_INTEGRATION_DEACTIVATED = "DaoIntegrationDeactivated"
WEIGHTS_UPDATED = "WeightsUpdated"
USER_REGISTERED = "UserRegistered"
USER_VERIFIED = "UserVerified"
OWNERSHIP_TRANSFERRED = "OwnershipTransferred"

EVENT_NAMES = frozenset(
    {
        CONTRIBUTION_ADDED,
        KARMA_CALCULATED,
        ACCESS_GRANTED,
        ACCESS_DENIED,
        ACCESS_RULE_ADDED,
        ACCESS_RULE_DEACTIVATED,
        DAO_INTEGRATION_ADDED,
        DAO_INTEGRATION_DEACTIVATED,
        WEIGHTS_UPDATED,
        USER_REGISTERED,
        USER_VERIFIED,
        OWNERSHIP_TRANSFERRED,
    }
)

Subscriber = Callable[[Dict[str, Any]], None]


def _now() -> int:
    return int(time.time())


class EventLog:
    def __init__(self, state: Dict[str, Any], keep_events: int = 5000) -> None:
        self.state = state
        self.state.setdefault("events", [])
        self.keep_events = int(keep_events)
        self.lock = threading.RLock()
        self._subscribers: List[Subscriber] = []
        self._local = threading.local()

    def subscribe(self, callback: Subscriber) -> None:
        with self.lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self.lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    # ------------------------------------------------------------------
    # Buffering: while a thread has an open buffer, emit() only collects.
    # The owner of the buffer decides whether the events are kept.
    # ------------------------------------------------------------------

    def begin(self) -> None:
        self._local.pending = []

    def end(self) -> List[Dict[str, Any]]:
        """Close this thread's buffer and return what it collected."""
        pending = getattr(self._local, "pending", None) or []
        self._local.pending = None
        return pending

    def emit(self, event_name: str, **payload: Any) -> Dict[str, Any]:
        if event_name not in EVENT_NAMES:
            raise ValueError(f"unknown event name: {event_name}")

        ev = {
            "id": secrets.token_hex(8),
            "name": event_name,
            "ts": _now(),
            "payload": payload,
        }
        pending = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append(ev)
            return ev

        self.append([ev])
        self.notify([ev])
        return ev

    def append(self, batch: List[Dict[str, Any]]) -> None:
        if not batch:
            return
        with self.lock:
            events: List[Dict[str, Any]] = self.state["events"]
            events.extend(batch)
            if self.keep_events > 0 and len(events) > self.keep_events:
                del events[: len(events) - self.keep_events]

    def discard(self, batch: List[Dict[str, Any]]) -> None:
        """Drop previously appended events (a write that could not be saved)."""
        if not batch:
            return
        ids = {e["id"] for e in batch}
        with self.lock:
            self.state["events"][:] = [e for e in self.state["events"] if e.get("id") not in ids]

    def notify(self, batch: List[Dict[str, Any]]) -> None:
        with self.lock:
            subscribers = list(self._subscribers)
        for ev in batch:
            for cb in subscribers:
                try:
                    cb(ev)
                except Exception:
                    log.exception("event subscriber failed for %s", ev["name"])

    def recent(
        self, limit: int = 100, name: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest first."""
        with self.lock:
            events = list(self.state["events"])
        if name:
            events = [e for e in events if e.get("name") == name]
        if user_id:
            events = [e for e in events if e.get("payload", {}).get("user_id") == user_id]
        events.reverse()
        return events[: max(0, int(limit))]
