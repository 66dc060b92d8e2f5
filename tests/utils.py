"""Utility helpers for test factories."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from app.gamification.catalog import BadgeCatalog, build_badge_definition
from app.gamification.errors import WriteError
from app.gamification.types import BadgeDefinition, UserBadgeRecord
from app.models.user.badge_model import Badge, UserBadge
from app.persistence.base import ChangeFeed, ChangeKind, PersistenceAdapter


def badge_row(badge_id: str, answer: Any = "", **kwargs) -> Dict[str, Any]:
    row = {
        "id": badge_id,
        "name": kwargs.pop("name", badge_id.title()),
        "answer": json.dumps(answer) if isinstance(answer, dict) else answer,
    }
    row.update(kwargs)
    return row


def make_badge(badge_id: str, answer: Any = "", **kwargs) -> BadgeDefinition:
    return build_badge_definition(badge_row(badge_id, answer, **kwargs))


def make_catalog(*rows: Dict[str, Any]) -> BadgeCatalog:
    return BadgeCatalog.from_rows(rows)


def unlocked(user_id: str, badge_id: str, level: Optional[str] = None, **kwargs) -> UserBadgeRecord:
    return UserBadgeRecord(
        user_id=user_id,
        badge_id=badge_id,
        success=True,
        level=level,
        was_ever_unlocked=True,
        **kwargs,
    )


def create_badges(db, rows: Iterable[Dict[str, Any]]) -> List[Badge]:
    badges = []
    for row in rows:
        badge = Badge(
            id=row["id"],
            name=row.get("name", row["id"]),
            answer=row.get("answer"),
            low_skill=row.get("low_skill", False),
            theme=row.get("theme"),
        )
        db.add(badge)
        badges.append(badge)
    db.commit()
    return badges


def create_user_badge(db, user_id: str, badge_id: str, **kwargs) -> UserBadge:
    defaults = {
        "success": True,
        "level": None,
        "user_answer": None,
        "was_ever_unlocked": True,
        "is_blocked_by_suspicions": False,
    }
    defaults.update(kwargs)
    row = UserBadge(user_id=user_id, badge_id=badge_id, **defaults)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


class InMemoryAdapter(PersistenceAdapter):
    """Store en mémoire; ``fail_writes`` simule une panne d'écriture."""

    def __init__(self, records: Iterable[UserBadgeRecord] = (), feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(feed)
        self.rows: Dict[tuple, UserBadgeRecord] = {(r.user_id, r.badge_id): r for r in records}
        self.fail_writes = False
        self.writes: List[UserBadgeRecord] = []
        self.profile_stats: Dict[str, Dict[str, Any]] = {}
        self.write_hook = None

    async def read_user_badges(self, user_id):
        return [record for (owner, _), record in self.rows.items() if owner == user_id]

    async def upsert_user_badge(self, record):
        if self.write_hook is not None:
            await self.write_hook(record)
        if self.fail_writes:
            raise WriteError("store unavailable", user_id=record.user_id, badge_id=record.badge_id)
        key = (record.user_id, record.badge_id)
        created = key not in self.rows
        self.rows[key] = record
        self.writes.append(record)
        self._publish(ChangeKind.INSERT if created else ChangeKind.UPDATE, record)

    async def delete_user_badge(self, user_id, badge_id):
        record = self.rows.pop((user_id, badge_id), None)
        if record is not None:
            self._publish(ChangeKind.DELETE, record)

    async def save_profile_stats(self, user_id, *, badge_count, skill_points, rank):
        self.profile_stats[user_id] = {
            "badge_count": badge_count,
            "skill_points": skill_points,
            "rank": rank,
        }
