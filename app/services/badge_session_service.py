"""One badge reconciler per user, shared by the HTTP handlers of this process."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.gamification.catalog import BadgeCatalog
from app.gamification.display import badge_emoji, format_level_tag, format_user_answer
from app.gamification.evaluator import AnswerEvaluator
from app.gamification.ghost_resolver import GhostResolver
from app.gamification.reconciler import AggregateReconciler, build_aggregate
from app.gamification.scoring import ScoreCalculator
from app.gamification.types import AggregateState, BadgeId, UserBadgeRecord, UserId
from app.notifications.websocket_manager import notification_ws_manager
from app.persistence.base import ChangeFeed, PersistenceAdapter
from app.persistence.catalog_source import load_catalog
from app.persistence.local_adapter import LocalBadgeAdapter
from app.persistence.sql_adapter import SQLBadgeAdapter
from app.schemas.user.badge_schema import BadgeRead, BadgeWithStatus

logger = logging.getLogger(__name__)

badge_change_feed = ChangeFeed()


def _default_adapter() -> PersistenceAdapter:
    if settings.LOCAL_BADGES_MODE:
        return LocalBadgeAdapter(feed=badge_change_feed)
    from app.db import session as db_session

    return SQLBadgeAdapter(db_session.SessionLocal, feed=badge_change_feed)


class BadgeSessionRegistry:
    def __init__(
        self,
        adapter: Optional[PersistenceAdapter] = None,
        catalog_loader: Callable[[Optional[Session]], BadgeCatalog] = load_catalog,
    ) -> None:
        self._adapter = adapter
        self._catalog_loader = catalog_loader
        self._catalog: Optional[BadgeCatalog] = None
        self._sessions: Dict[UserId, AggregateReconciler] = {}
        self._lock = asyncio.Lock()
        self.evaluator = AnswerEvaluator()
        self.scorer = ScoreCalculator()
        self.resolver = GhostResolver(scorer=self.scorer)

    @property
    def adapter(self) -> PersistenceAdapter:
        if self._adapter is None:
            self._adapter = _default_adapter()
        return self._adapter

    def catalog(self, db: Optional[Session] = None) -> BadgeCatalog:
        if self._catalog is None:
            self._catalog = self._catalog_loader(db)
            logger.info("Catalogue de badges chargé: %s badges", len(self._catalog))
        return self._catalog

    async def get_session(self, user_id: UserId, db: Optional[Session] = None) -> AggregateReconciler:
        """Return the loaded reconciler of ``user_id``, creating it on first use.

        Raises ``WriteError`` when the user's records cannot be read.
        """
        reconciler = self._sessions.get(user_id)
        if reconciler is not None:
            return reconciler

        async with self._lock:
            reconciler = self._sessions.get(user_id)
            if reconciler is not None:
                return reconciler
            reconciler = AggregateReconciler(
                user_id,
                self.catalog(db),
                self.adapter,
                evaluator=self.evaluator,
                scorer=self.scorer,
                resolver=self.resolver,
            )
            reconciler.subscribe(notification_ws_manager.push_badge_event)
            reconciler.start()
            try:
                await reconciler.load()
            except Exception:
                reconciler.stop()
                raise
            self._sessions[user_id] = reconciler
            return reconciler

    async def public_stats(self, user_id: UserId, db: Optional[Session] = None) -> AggregateState:
        """Aggregate of any user, computed from the store without opening a session."""
        records = await self.adapter.read_user_badges(user_id)
        return build_aggregate(self.catalog(db), records, self.scorer, self.resolver)

    def close(self, user_id: UserId) -> None:
        reconciler = self._sessions.pop(user_id, None)
        if reconciler is not None:
            reconciler.stop()

    def close_all(self) -> None:
        for user_id in list(self._sessions):
            self.close(user_id)


def describe_badges(
    catalog: BadgeCatalog,
    records: Mapping[BadgeId, UserBadgeRecord],
    aggregate: AggregateState,
    scorer: ScoreCalculator,
) -> List[BadgeWithStatus]:
    """Badges visibles pour l'utilisateur; les fantômes n'apparaissent qu'une fois débloqués."""
    result: List[BadgeWithStatus] = []
    for badge in catalog:
        unlocked = badge.id in aggregate.unlocked_badge_ids
        if badge.is_ghost and not unlocked:
            continue
        record = records.get(badge.id)
        level = aggregate.levels.get(badge.id) if unlocked else None
        result.append(
            BadgeWithStatus(
                badge=BadgeRead(
                    id=badge.id,
                    name=badge.display_name(level),
                    emoji=badge_emoji(badge),
                    description=badge.description,
                    question=badge.question,
                    theme=badge.theme,
                    low_skill=badge.low_skill,
                    is_ghost=badge.is_ghost,
                ),
                is_unlocked=unlocked,
                level=level,
                level_tag=format_level_tag(badge, unlocked, level),
                display_answer=format_user_answer(badge, record.user_answer) if record and unlocked else None,
                skill_points=scorer.points(badge, level) if unlocked else 0,
                was_ever_unlocked=bool(record and record.was_ever_unlocked),
                blocked_by_suspicion=bool(record and record.blocked_by_suspicion),
            )
        )
    return result


badge_sessions = BadgeSessionRegistry()
