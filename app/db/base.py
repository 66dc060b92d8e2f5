"""Déclare l'ensemble des modèles SQLAlchemy pour la création des tables."""

from app.db.base_class import Base

# Catalogue, badges des utilisateurs et modération
from app.models.user.badge_model import Badge, BadgeSuspicion, UserBadge

# Profils (compteurs dérivés)
from app.models.user.profile_model import Profile

__all__ = (
    "Base",
    "Badge",
    "UserBadge",
    "BadgeSuspicion",
    "Profile",
)
