from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import badge_crud
from app.models.user.badge_model import BadgeSuspicion
from app.persistence.base import ChangeEvent, ChangeFeed, ChangeKind

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SuspicionError(Exception):
    """Domain-specific exception raised when a suspicion cannot be recorded."""

    code: str
    status_code: int = 400

    def __str__(self) -> str:  # pragma: no cover - human readable message
        return self.code


class SuspicionService:
    """Moderation of unlocked badges by other users.

    At ``SUSPICION_BLOCK_THRESHOLD`` suspicions the badge record is flagged
    ``is_blocked_by_suspicions``: it stays stored but stops counting in the
    owner's aggregate. Dropping back below the threshold lifts the flag.
    Flag changes are published on the change feed so live sessions follow.
    """

    def __init__(
        self,
        db: Session,
        suspicious_user_id: str,
        feed: Optional[ChangeFeed] = None,
        threshold: Optional[int] = None,
    ):
        self.db = db
        self.suspicious_user_id = suspicious_user_id
        self.feed = feed
        self.threshold = threshold if threshold is not None else settings.SUSPICION_BLOCK_THRESHOLD

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def suspect_badge(self, user_id: str, badge_id: str) -> Dict[str, object]:
        if self.suspicious_user_id == user_id:
            raise SuspicionError("cannot_suspect_own_badge", status_code=403)

        row = badge_crud.get_user_badge(self.db, user_id, badge_id)
        if row is None or not row.success:
            raise SuspicionError("badge_not_unlocked", status_code=404)

        if badge_crud.get_suspicion(self.db, user_id, badge_id, self.suspicious_user_id):
            raise SuspicionError("already_suspected", status_code=409)

        self.db.add(BadgeSuspicion(user_id=user_id, badge_id=badge_id, suspicious_user_id=self.suspicious_user_id))
        self.db.commit()

        count = badge_crud.count_suspicions(self.db, user_id, badge_id)
        if count >= self.threshold and not row.is_blocked_by_suspicions:
            record = badge_crud.set_blocked_by_suspicion(self.db, row, True)
            logger.info("Badge %s de %s bloqué après %s soupçons", badge_id, user_id, count)
            self._publish(record)
        return {"blocked": bool(row.is_blocked_by_suspicions), "suspicion_count": count}

    def remove_suspicion(self, user_id: str, badge_id: str) -> Dict[str, object]:
        suspicion = badge_crud.get_suspicion(self.db, user_id, badge_id, self.suspicious_user_id)
        if suspicion is None:
            raise SuspicionError("suspicion_not_found", status_code=404)

        self.db.delete(suspicion)
        self.db.commit()

        count = badge_crud.count_suspicions(self.db, user_id, badge_id)
        row = badge_crud.get_user_badge(self.db, user_id, badge_id)
        if row is None:
            return {"blocked": False, "suspicion_count": count}
        if row.is_blocked_by_suspicions and count < self.threshold:
            record = badge_crud.set_blocked_by_suspicion(self.db, row, False)
            logger.info("Badge %s de %s débloqué (%s soupçons restants)", badge_id, user_id, count)
            self._publish(record)
        return {"blocked": bool(row.is_blocked_by_suspicions), "suspicion_count": count}

    def has_suspected(self, user_id: str, badge_id: str) -> bool:
        return badge_crud.get_suspicion(self.db, user_id, badge_id, self.suspicious_user_id) is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _publish(self, record) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(kind=ChangeKind.UPDATE, record=record))
