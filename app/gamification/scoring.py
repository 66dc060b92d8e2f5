"""Skill points and ranks.

Base points:
 - expert (ancien mystère/secret) = bonus fixe (10 par défaut);
 - sinon les points personnalisés du niveau, ou sa position (Skill 1 => 1,
   Skill 3 => 3, ...);
 - badge sans niveau (texte, oui/non) = 1.

Low skills: on perd des points, et la valeur est x2
(Skill 1 => -2, Skill 3 => -6, Expert => -20).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

from app.core.config import settings
from app.gamification.badge_rules import (
    BadgeRule,
    BooleanRule,
    GhostRule,
    MultiSelectMode,
    MultiSelectRule,
    SingleSelectRule,
    find_level,
    is_expert_label,
    is_level_zero,
    is_no_skill_label,
    is_veto_label,
    top_level,
)
from app.gamification.types import BadgeDefinition


@dataclass(frozen=True)
class Rank:
    min_skill_points: int
    name: str


DEFAULT_RANKS: Tuple[Rank, ...] = (
    Rank(0, "Débutant"),
    Rank(15, "Polyvalent"),
    Rank(30, "Compétent"),
    Rank(60, "Accompli"),
    Rank(100, "Multiskills"),
)


class RankTable:
    """Ordered ascending skill thresholds."""

    def __init__(self, ranks: Sequence[Rank] = DEFAULT_RANKS) -> None:
        if not ranks:
            raise ValueError("a rank table needs at least one rank")
        self._ranks = tuple(sorted(ranks, key=lambda rank: rank.min_skill_points))

    @property
    def ranks(self) -> Tuple[Rank, ...]:
        return self._ranks

    def rank_for(self, skill_points: int) -> Rank:
        current = self._ranks[0]
        for rank in self._ranks:
            if skill_points >= rank.min_skill_points:
                current = rank
        return current

    def index_of(self, name: Optional[str]) -> Optional[int]:
        wanted = (name or "").strip().lower()
        for index, rank in enumerate(self._ranks):
            if rank.name.lower() == wanted:
                return index
        return None

    def reaches(self, current: str, minimum: str) -> bool:
        """``current`` est-il au moins ``minimum`` dans l'ordre de la table?"""
        current_index = self.index_of(current)
        minimum_index = self.index_of(minimum)
        if current_index is None or minimum_index is None:
            return False
        return current_index >= minimum_index


class ScoreCalculator:
    """Signed skill-point value of an unlocked badge at a given level."""

    def __init__(self, expert_bonus: Optional[int] = None, low_skill_multiplier: Optional[int] = None) -> None:
        self.expert_bonus = settings.EXPERT_BONUS_POINTS if expert_bonus is None else expert_bonus
        self.low_skill_multiplier = (
            settings.LOW_SKILL_MULTIPLIER if low_skill_multiplier is None else low_skill_multiplier
        )

    def points(self, badge: BadgeDefinition, level: Optional[str]) -> int:
        if is_level_zero(level):
            return 0
        return self._apply_low_skill(badge, self._base_points(badge.rule, level))

    def max_points(self, badge: BadgeDefinition) -> int:
        """Meilleur score atteignable (aperçu dans l'administration)."""
        return self._apply_low_skill(badge, self._best_base_points(badge.rule))

    def catalog_totals(self, badges: Iterable[BadgeDefinition]) -> Tuple[int, int]:
        """Retourne ``(total_skills, total_low_skills)`` pour tout le catalogue."""
        total_skills = 0
        total_low_skills = 0
        for badge in badges:
            best = abs(self.max_points(badge))
            if badge.low_skill:
                total_low_skills += best
            else:
                total_skills += best
        return total_skills, total_low_skills

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _apply_low_skill(self, badge: BadgeDefinition, base: int) -> int:
        if badge.low_skill:
            return -abs(base) * self.low_skill_multiplier
        return base

    def _base_points(self, rule: BadgeRule, level: Optional[str]) -> int:
        if is_expert_label(level):
            return self.expert_bonus

        if level is None:
            if isinstance(rule, (GhostRule, BooleanRule)) and rule.skill_points:
                return rule.skill_points
            return 1

        position, spec = find_level(rule, level)
        if spec is None:
            return 1
        if spec.points:
            return spec.points
        return position

    def _best_base_points(self, rule: BadgeRule) -> int:
        if isinstance(rule, GhostRule):
            return rule.skill_points or 1
        by_option = isinstance(rule, MultiSelectRule) and rule.mode is MultiSelectMode.BY_OPTION
        if by_option or (isinstance(rule, SingleSelectRule) and rule.option_skill_labels):
            labels = [
                label
                for label in rule.option_skill_labels.values()
                if not is_veto_label(label) and not is_no_skill_label(label)
            ]
            if not labels:
                return 1
            return max(self._base_points(rule, label) for label in labels)
        top = top_level(rule)
        if top is not None:
            return self._base_points(rule, top.label)
        return self._base_points(rule, None) or 1
