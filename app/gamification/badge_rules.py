"""
Définition typée des règles de badges (variantes de configuration).

Objectif: une union fermée, une classe par variante, pour que l'évaluateur et
le calcul des points puissent traiter chaque cas explicitement.
 - Le parseur (``config_parser``) est le seul endroit qui lit le JSON brut.
 - Les règles sont immuables et partagées librement entre sessions.

Les libellés sentinelles viennent de l'outil d'administration:
"bloquer" (l'option ne débloque jamais le badge) et "aucun" (pas de skill).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union

VETO_LABEL = "bloquer"
NO_SKILL_LABEL = "aucun"
EXPERT_LABEL = "Expert"
MAX_LEVEL_LABEL = "Skill max"
LEVEL_ZERO = "level 0"

DEFAULT_TRUE_LABELS: Tuple[str, ...] = ("oui", "yes", "y")
DEFAULT_FALSE_LABELS: Tuple[str, ...] = ("non", "no", "n")

_MYSTERY_MARKERS = ("mystère", "mystere", "secret", "expert")
_LEVEL_ZERO_RE = re.compile(r"^(?:level|niveau|niv|skill)\s*0$")


def is_expert_label(label: Optional[str]) -> bool:
    """Les anciens libellés "mystère"/"secret" sont traités comme "expert"."""
    if not isinstance(label, str):
        return False
    lower = label.lower()
    return any(marker in lower for marker in _MYSTERY_MARKERS)


def is_level_zero(label: Optional[str]) -> bool:
    if not isinstance(label, str):
        return False
    normalized = " ".join(label.strip().lower().split())
    return bool(_LEVEL_ZERO_RE.match(normalized))


def is_veto_label(label: Optional[str]) -> bool:
    # Compat: "valeur|" (libellé vide) est aussi bloquant
    text = (label or "").strip().lower()
    return not text or text == VETO_LABEL


def is_no_skill_label(label: Optional[str]) -> bool:
    return (label or "").strip().lower() == NO_SKILL_LABEL


class PrerequisiteMode(str, Enum):
    ALL = "all"
    ANY = "any"


class MultiSelectMode(str, Enum):
    BY_OPTION = "byOption"
    BY_COUNT = "byCount"


@dataclass(frozen=True)
class OptionSpec:
    value: str
    label: str


@dataclass(frozen=True)
class LevelSpec:
    label: str
    min: Optional[float] = None
    max: Optional[float] = None
    # Points personnalisés; sinon la position (1-based) dans la liste
    points: Optional[int] = None

    def contains(self, value: float) -> bool:
        low = self.min if self.min is not None else float("-inf")
        high = self.max if self.max is not None else float("inf")
        return low <= value <= high


@dataclass(frozen=True)
class GhostPrerequisite:
    mode: PrerequisiteMode = PrerequisiteMode.ALL
    required_badge_ids: Tuple[str, ...] = ()
    min_unlocked_count: int = 0
    min_skill_points: int = 0
    min_rank: Optional[str] = None

    def is_empty(self) -> bool:
        return not (
            self.required_badge_ids
            or self.min_unlocked_count > 0
            or self.min_skill_points > 0
            or (self.min_rank or "").strip()
        )


@dataclass(frozen=True)
class BooleanRule:
    true_labels: Tuple[str, ...] = DEFAULT_TRUE_LABELS
    false_labels: Tuple[str, ...] = DEFAULT_FALSE_LABELS
    expected: bool = True
    skill_points: Optional[int] = None
    display_text_true: Optional[str] = None
    display_text_false: Optional[str] = None


@dataclass(frozen=True)
class SingleSelectRule:
    options: Tuple[OptionSpec, ...] = ()
    option_skill_labels: Dict[str, str] = field(default_factory=dict)
    levels: Tuple[LevelSpec, ...] = ()


@dataclass(frozen=True)
class MultiSelectRule:
    options: Tuple[OptionSpec, ...] = ()
    option_skill_labels: Dict[str, str] = field(default_factory=dict)
    # Seuils par nombre de coches (BY_COUNT) ou classement des skills (BY_OPTION)
    levels: Tuple[LevelSpec, ...] = ()
    mode: MultiSelectMode = MultiSelectMode.BY_COUNT


@dataclass(frozen=True)
class RangeRule:
    min: Optional[float] = None
    max: Optional[float] = None
    levels: Tuple[LevelSpec, ...] = ()
    expected: Optional[float] = None


@dataclass(frozen=True)
class FreeTextRule:
    expected_answer: str = ""


@dataclass(frozen=True)
class GhostRule:
    prerequisite: GhostPrerequisite
    inner: "BadgeRule" = field(default_factory=FreeTextRule)
    skill_points: Optional[int] = None
    ghost_display_text: Optional[str] = None


BadgeRule = Union[BooleanRule, SingleSelectRule, MultiSelectRule, RangeRule, FreeTextRule, GhostRule]


def unwrap(rule: BadgeRule) -> BadgeRule:
    """Retourne la variante "visible" d'une règle fantôme."""
    return rule.inner if isinstance(rule, GhostRule) else rule


def rule_levels(rule: BadgeRule) -> Tuple[LevelSpec, ...]:
    """Liste ordonnée des niveaux déclarés (vide pour les variantes sans niveaux)."""
    rule = unwrap(rule)
    if isinstance(rule, (SingleSelectRule, MultiSelectRule, RangeRule)):
        return rule.levels
    return ()


def top_level(rule: BadgeRule) -> Optional[LevelSpec]:
    """Niveau au sommet de l'ordre d'une variante.

    Plage: dernier niveau déclaré. Multi-sélection par nombre: seuil au ``min``
    le plus élevé. Autres variantes: dernier niveau déclaré.
    """
    rule = unwrap(rule)
    levels = rule_levels(rule)
    if not levels:
        return None
    if isinstance(rule, MultiSelectRule) and rule.mode is MultiSelectMode.BY_COUNT:
        best = levels[0]
        for level in levels[1:]:
            if (level.min or 0) >= (best.min or 0):
                best = level
        return best
    return levels[-1]


def find_level(rule: BadgeRule, label: Optional[str]) -> Tuple[int, Optional[LevelSpec]]:
    """Position 1-based et niveau correspondant à ``label`` (0, None si absent).

    Le libellé canonique "Skill max" désigne le niveau au sommet.
    """
    if not label:
        return 0, None
    levels = rule_levels(rule)
    if label.strip().lower() == MAX_LEVEL_LABEL.lower():
        top = top_level(rule)
        if top is None:
            return 0, None
        return levels.index(top) + 1, top
    wanted = label.strip().lower()
    for index, level in enumerate(levels):
        if level.label.strip().lower() == wanted:
            return index + 1, level
    return 0, None
