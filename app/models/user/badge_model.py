# badgelife/backend/app/models/user/badge_model.py

from __future__ import annotations
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from app.db.base_class import Base
from datetime import datetime
from typing import Optional


class Badge(Base):
    __tablename__ = "badges"
    id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String, index=True)
    expert_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Configuration brute de la règle (JSON typé ou réponse attendue "legacy")
    answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    emoji: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    low_skill: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    theme: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)


class UserBadge(Base):
    __tablename__ = "user_badges"
    __table_args__ = (UniqueConstraint("user_id", "badge_id", name="uq_user_badges_user_badge"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    badge_id: Mapped[str] = mapped_column(ForeignKey("badges.id"), index=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    level: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    was_ever_unlocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_blocked_by_suspicions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BadgeSuspicion(Base):
    __tablename__ = "badge_suspicions"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", "suspicious_user_id", name="uq_badge_suspicions_once"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Propriétaire du badge soupçonné
    user_id: Mapped[str] = mapped_column(String, index=True)
    badge_id: Mapped[str] = mapped_column(ForeignKey("badges.id"), index=True)
    suspicious_user_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
