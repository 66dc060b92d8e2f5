"""Badge record store backed by the SQL database."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crud import badge_crud
from app.gamification.errors import WriteError
from app.gamification.types import BadgeId, UserBadgeRecord, UserId
from app.persistence.base import ChangeFeed, ChangeKind, PersistenceAdapter

logger = logging.getLogger(__name__)


class SQLBadgeAdapter(PersistenceAdapter):
    """Each call opens its own short-lived session from ``session_factory``.

    Successful writes are published on the change feed (INSERT for a new
    row, UPDATE for an overwrite, DELETE when a row was removed).
    """

    def __init__(self, session_factory: Callable[[], Session], feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(feed)
        self.session_factory = session_factory

    async def read_user_badges(self, user_id: UserId) -> List[UserBadgeRecord]:
        try:
            with self.session_factory() as db:
                return [badge_crud.to_record(row) for row in badge_crud.get_user_badges(db, user_id)]
        except SQLAlchemyError as exc:
            logger.error("Lecture des badges de %s impossible: %s", user_id, exc)
            raise WriteError("lecture des badges impossible", user_id=user_id) from exc

    async def upsert_user_badge(self, record: UserBadgeRecord) -> None:
        try:
            with self.session_factory() as db:
                _, created = badge_crud.upsert_user_badge(db, record)
        except SQLAlchemyError as exc:
            logger.error("Écriture du badge %s pour %s impossible: %s", record.badge_id, record.user_id, exc)
            raise WriteError("écriture du badge impossible", user_id=record.user_id, badge_id=record.badge_id) from exc
        self._publish(ChangeKind.INSERT if created else ChangeKind.UPDATE, record)

    async def delete_user_badge(self, user_id: UserId, badge_id: BadgeId) -> None:
        try:
            with self.session_factory() as db:
                removed = badge_crud.delete_user_badge(db, user_id, badge_id)
        except SQLAlchemyError as exc:
            logger.error("Suppression du badge %s pour %s impossible: %s", badge_id, user_id, exc)
            raise WriteError("suppression du badge impossible", user_id=user_id, badge_id=badge_id) from exc
        if removed is not None:
            self._publish(ChangeKind.DELETE, removed)

    async def save_profile_stats(
        self,
        user_id: UserId,
        *,
        badge_count: int,
        skill_points: int,
        rank: str,
    ) -> None:
        try:
            with self.session_factory() as db:
                badge_crud.save_profile_stats(
                    db, user_id, badge_count=badge_count, skill_points=skill_points, rank=rank
                )
        except SQLAlchemyError as exc:
            raise WriteError("mise à jour du profil impossible", user_id=user_id) from exc
