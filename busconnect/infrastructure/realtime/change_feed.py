# busconnect/infrastructure/realtime/change_feed.py

from typing import Callable, Dict
import logging
import threading
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from busconnect.infrastructure.repositories.seat_ledger import SeatLedger, SeatSnapshot


logger = logging.getLogger(__name__)

CHANGED_TRIPS_KEY = "busconnect.changed_trips"

Deliver = Callable[[dict], None]


def mark_trip_changed(db: Session, trip_id: str) -> None:
    """Queue a snapshot push for trip_id once this session commits."""
    db.info.setdefault(CHANGED_TRIPS_KEY, set()).add(trip_id)


class SeatChangeFeed:
    """
    Advisory subscriber registry. Snapshots are re-derived from storage on
    every publish, so a missed message is repaired by the next one.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._subscribers: Dict[str, Dict[str, Deliver]] = {}
        self._lock = threading.Lock()

    # -----------------------------
    # Session hooks
    # -----------------------------
    def install(self) -> "SeatChangeFeed":
        if not event.contains(self.session_factory, "after_commit", self._after_commit):
            event.listen(self.session_factory, "after_commit", self._after_commit)
            event.listen(self.session_factory, "after_rollback", self._after_rollback)
        return self

    def uninstall(self) -> None:
        if event.contains(self.session_factory, "after_commit", self._after_commit):
            event.remove(self.session_factory, "after_commit", self._after_commit)
            event.remove(self.session_factory, "after_rollback", self._after_rollback)

    def _after_commit(self, session: Session) -> None:
        changed = session.info.pop(CHANGED_TRIPS_KEY, None)
        for trip_id in sorted(changed or ()):
            self.publish(trip_id)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(CHANGED_TRIPS_KEY, None)

    # -----------------------------
    # Subscriptions
    # -----------------------------
    def subscribe(self, trip_id: str, deliver: Deliver) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._subscribers.setdefault(trip_id, {})[subscription_id] = deliver
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            for trip_id, group in list(self._subscribers.items()):
                if group.pop(subscription_id, None) is not None:
                    if not group:
                        del self._subscribers[trip_id]
                    return

    def subscriber_count(self, trip_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(trip_id, {}))

    # -----------------------------
    # Publishing
    # -----------------------------
    def current_snapshot(self, trip_id: str) -> SeatSnapshot:
        with self.session_factory() as session:
            return SeatLedger(session).snapshot(trip_id)

    def publish(self, trip_id: str) -> int:
        with self._lock:
            targets = list(self._subscribers.get(trip_id, {}).items())

        if not targets:
            return 0

        try:
            message = self.current_snapshot(trip_id).as_dict()
        except Exception:
            logger.exception("Could not build seat snapshot for trip %s", trip_id)
            return 0

        delivered = 0
        for subscription_id, deliver in targets:
            try:
                deliver(message)
                delivered += 1
            except Exception:
                logger.warning(
                    "Dropping seat feed subscriber %s for trip %s after delivery failure",
                    subscription_id,
                    trip_id,
                )
                self.unsubscribe(subscription_id)

        return delivered
