"""Contract shared by the badge record stores.

The reconciler only talks to :class:`PersistenceAdapter`; the SQL store and
the local JSON store must be interchangeable behind it (same upsert key,
same change events).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from app.gamification.types import BadgeId, UserBadgeRecord, UserId

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    record: UserBadgeRecord


ChangeCallback = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


class ChangeFeed:
    """Fan-out of record changes to the subscribers of one user.

    Delivery is synchronous, in the publisher's thread. A subscriber that
    raises is logged and skipped; the others still receive the event.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[UserId, List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: UserId, callback: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id)
                if not callbacks:
                    return
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(user_id, None)

        return _unsubscribe

    def subscriber_count(self, user_id: UserId) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event.record.user_id, ()))
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Abonné en erreur pour %s (user=%s badge=%s)",
                    event.kind.value,
                    event.record.user_id,
                    event.record.badge_id,
                )


class PersistenceAdapter(ABC):
    """Authoritative store of :class:`UserBadgeRecord` values.

    Every failure of the underlying store surfaces as ``WriteError``.
    ``upsert_user_badge`` is keyed on ``(user_id, badge_id)``: writing the same
    key twice overwrites, it never duplicates.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed or ChangeFeed()

    @abstractmethod
    async def read_user_badges(self, user_id: UserId) -> List[UserBadgeRecord]:
        ...

    @abstractmethod
    async def upsert_user_badge(self, record: UserBadgeRecord) -> None:
        ...

    @abstractmethod
    async def delete_user_badge(self, user_id: UserId, badge_id: BadgeId) -> None:
        ...

    @abstractmethod
    async def save_profile_stats(
        self,
        user_id: UserId,
        *,
        badge_count: int,
        skill_points: int,
        rank: str,
    ) -> None:
        ...

    def on_change(self, user_id: UserId, callback: ChangeCallback) -> Unsubscribe:
        return self.feed.subscribe(user_id, callback)

    def _publish(self, kind: ChangeKind, record: UserBadgeRecord) -> None:
        self.feed.publish(ChangeEvent(kind=kind, record=record))
