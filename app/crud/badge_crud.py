from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.gamification.types import UserBadgeRecord
from app.models.user.badge_model import Badge, BadgeSuspicion, UserBadge
from app.models.user.profile_model import Profile


def list_badge_rows(db: Session) -> List[Dict[str, object]]:
    """Lignes brutes du catalogue, au format attendu par ``BadgeCatalog.from_rows``."""
    badges = db.query(Badge).order_by(Badge.theme, Badge.name, Badge.id).all()
    return [
        {
            "id": badge.id,
            "name": badge.name,
            "expert_name": badge.expert_name,
            "description": badge.description,
            "question": badge.question,
            "answer": badge.answer,
            "emoji": badge.emoji,
            "low_skill": badge.low_skill,
            "theme": badge.theme,
        }
        for badge in badges
    ]


def to_record(row: UserBadge) -> UserBadgeRecord:
    return UserBadgeRecord(
        user_id=row.user_id,
        badge_id=row.badge_id,
        success=bool(row.success),
        level=row.level,
        user_answer=row.user_answer,
        was_ever_unlocked=bool(row.was_ever_unlocked),
        blocked_by_suspicion=bool(row.is_blocked_by_suspicions),
    )


def get_user_badges(db: Session, user_id: str) -> List[UserBadge]:
    return (
        db.query(UserBadge)
        .filter(UserBadge.user_id == user_id)
        .order_by(UserBadge.id)
        .all()
    )


def get_user_badge(db: Session, user_id: str, badge_id: str) -> Optional[UserBadge]:
    return (
        db.query(UserBadge)
        .filter(UserBadge.user_id == user_id, UserBadge.badge_id == badge_id)
        .first()
    )


def upsert_user_badge(db: Session, record: UserBadgeRecord) -> Tuple[UserBadge, bool]:
    """Écrase la ligne ``(user_id, badge_id)`` ou la crée. Retourne ``(ligne, créée)``."""
    row = get_user_badge(db, record.user_id, record.badge_id)
    created = row is None
    if created:
        row = UserBadge(user_id=record.user_id, badge_id=record.badge_id)
        db.add(row)

    row.success = record.success
    row.level = record.level
    row.user_answer = record.user_answer
    row.was_ever_unlocked = record.was_ever_unlocked
    row.is_blocked_by_suspicions = record.blocked_by_suspicion
    db.commit()
    db.refresh(row)
    return row, created


def delete_user_badge(db: Session, user_id: str, badge_id: str) -> Optional[UserBadgeRecord]:
    row = get_user_badge(db, user_id, badge_id)
    if row is None:
        return None
    record = to_record(row)
    db.delete(row)
    db.commit()
    return record


def set_blocked_by_suspicion(db: Session, row: UserBadge, blocked: bool) -> UserBadgeRecord:
    row.is_blocked_by_suspicions = blocked
    db.commit()
    db.refresh(row)
    return to_record(row)


# --- Soupçons ---
def count_suspicions(db: Session, user_id: str, badge_id: str) -> int:
    return (
        db.query(BadgeSuspicion)
        .filter(BadgeSuspicion.user_id == user_id, BadgeSuspicion.badge_id == badge_id)
        .count()
    )


def get_suspicion(db: Session, user_id: str, badge_id: str, suspicious_user_id: str) -> Optional[BadgeSuspicion]:
    return (
        db.query(BadgeSuspicion)
        .filter(
            BadgeSuspicion.user_id == user_id,
            BadgeSuspicion.badge_id == badge_id,
            BadgeSuspicion.suspicious_user_id == suspicious_user_id,
        )
        .first()
    )


# --- Profil ---
def get_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.get(Profile, user_id)


def save_profile_stats(db: Session, user_id: str, *, badge_count: int, skill_points: int, rank: str) -> Profile:
    profile = db.get(Profile, user_id)
    if profile is None:
        profile = Profile(id=user_id)
        db.add(profile)
    profile.badge_count = badge_count
    profile.skill_points = skill_points
    profile.rank = rank
    db.commit()
    db.refresh(profile)
    return profile
