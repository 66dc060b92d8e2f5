"""Badge record store kept in a local JSON key/value file.

Mirrors what the browser build keeps in ``localStorage``: one entry per user
under ``localUserBadges:<user_id>``, mapping badge ids to records. Used in
local mode (no database) and as a drop-in replacement in tests.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from app.core.config import settings
from app.gamification.errors import WriteError
from app.gamification.types import BadgeId, UserBadgeRecord, UserId
from app.persistence.base import ChangeFeed, ChangeKind, PersistenceAdapter

logger = logging.getLogger(__name__)

BADGES_KEY_PREFIX = "localUserBadges:"
PROFILE_KEY_PREFIX = "localProfile:"


def _record_to_dict(record: UserBadgeRecord) -> Dict[str, Any]:
    return {
        "success": record.success,
        "level": record.level,
        "user_answer": record.user_answer,
        "was_ever_unlocked": record.was_ever_unlocked,
        "is_blocked_by_suspicions": record.blocked_by_suspicion,
    }


def _record_from_dict(user_id: UserId, badge_id: BadgeId, raw: Dict[str, Any]) -> UserBadgeRecord:
    return UserBadgeRecord(
        user_id=user_id,
        badge_id=badge_id,
        success=raw.get("success") is True,
        level=raw.get("level"),
        user_answer=raw.get("user_answer"),
        was_ever_unlocked=raw.get("was_ever_unlocked") is True,
        blocked_by_suspicion=raw.get("is_blocked_by_suspicions") is True,
    )


class LocalBadgeAdapter(PersistenceAdapter):
    def __init__(self, path: Union[str, Path, None] = None, feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(feed)
        self.path = Path(path or settings.LOCAL_STORE_PATH)

    # ------------------------------------------------------------------
    # Store file
    # ------------------------------------------------------------------
    def _load_store(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise WriteError(f"stockage local illisible ({self.path})") from exc
        return data if isinstance(data, dict) else {}

    def _save_store(self, store: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(store, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise WriteError(f"écriture du stockage local impossible ({self.path})") from exc

    @staticmethod
    def _user_entries(store: Dict[str, Any], user_id: UserId) -> Dict[str, Any]:
        entries = store.get(f"{BADGES_KEY_PREFIX}{user_id}")
        return entries if isinstance(entries, dict) else {}

    # ------------------------------------------------------------------
    # PersistenceAdapter
    # ------------------------------------------------------------------
    async def read_user_badges(self, user_id: UserId) -> List[UserBadgeRecord]:
        entries = self._user_entries(self._load_store(), user_id)
        return [
            _record_from_dict(user_id, str(badge_id), raw)
            for badge_id, raw in entries.items()
            if isinstance(raw, dict)
        ]

    async def upsert_user_badge(self, record: UserBadgeRecord) -> None:
        store = self._load_store()
        entries = self._user_entries(store, record.user_id)
        created = record.badge_id not in entries
        entries[record.badge_id] = _record_to_dict(record)
        store[f"{BADGES_KEY_PREFIX}{record.user_id}"] = entries
        self._save_store(store)
        self._publish(ChangeKind.INSERT if created else ChangeKind.UPDATE, record)

    async def delete_user_badge(self, user_id: UserId, badge_id: BadgeId) -> None:
        store = self._load_store()
        entries = self._user_entries(store, user_id)
        raw = entries.pop(badge_id, None)
        if raw is None:
            return
        store[f"{BADGES_KEY_PREFIX}{user_id}"] = entries
        self._save_store(store)
        self._publish(ChangeKind.DELETE, _record_from_dict(user_id, badge_id, raw))

    async def save_profile_stats(
        self,
        user_id: UserId,
        *,
        badge_count: int,
        skill_points: int,
        rank: str,
    ) -> None:
        store = self._load_store()
        store[f"{PROFILE_KEY_PREFIX}{user_id}"] = {
            "badge_count": badge_count,
            "skill_points": skill_points,
            "rank": rank,
        }
        self._save_store(store)

    def read_profile_stats(self, user_id: UserId) -> Optional[Dict[str, Any]]:
        stats = self._load_store().get(f"{PROFILE_KEY_PREFIX}{user_id}")
        return stats if isinstance(stats, dict) else None
