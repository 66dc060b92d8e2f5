from sqlalchemy import Integer, String, Boolean, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from app.db.base_class import Base
from typing import Optional
from datetime import datetime


class Profile(Base):
    __tablename__ = "profiles"

    # Identifiant fourni par le fournisseur d'identité (hors périmètre)
    id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(50), index=True, nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")

    # --- Compteurs dérivés du moteur de badges ---
    badge_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    skill_points: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    rank: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
