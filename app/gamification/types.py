"""Value types shared by the badge engine components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Mapping, Optional

from app.gamification.badge_rules import LEVEL_ZERO, BadgeRule, FreeTextRule, GhostRule, is_expert_label

BadgeId = str
UserId = str


class DisplayMode(str, Enum):
    COUNT = "count"
    LIST = "list"


@dataclass(frozen=True)
class DisplayOptions:
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    multi_display_mode: DisplayMode = DisplayMode.COUNT


@dataclass(frozen=True)
class BadgeDefinition:
    id: BadgeId
    name: str
    rule: BadgeRule = field(default_factory=FreeTextRule)
    expert_name: Optional[str] = None
    emoji: Optional[str] = None
    description: str = ""
    question: str = ""
    theme: str = "Autres"
    low_skill: bool = False
    display: DisplayOptions = field(default_factory=DisplayOptions)

    @property
    def is_ghost(self) -> bool:
        return isinstance(self.rule, GhostRule)

    def display_name(self, level: Optional[str]) -> str:
        if self.expert_name and is_expert_label(level):
            return self.expert_name
        return self.name


@dataclass(frozen=True)
class UserBadgeRecord:
    user_id: UserId
    badge_id: BadgeId
    success: bool
    level: Optional[str] = None
    user_answer: Optional[str] = None
    was_ever_unlocked: bool = False
    blocked_by_suspicion: bool = False

    @property
    def counts_as_unlocked(self) -> bool:
        return self.success and not self.blocked_by_suspicion

    def relocked(self) -> "UserBadgeRecord":
        """Rebloque sans effacer l'historique (``was_ever_unlocked`` conservé)."""
        return replace(self, success=False, level=LEVEL_ZERO, user_answer=None)


class EvaluationOutcome(str, Enum):
    UNLOCKED = "unlocked"
    DENIED = "denied"
    INVALID = "invalid"


@dataclass(frozen=True)
class EvaluationResult:
    ok: bool
    level: Optional[str]
    message: str
    outcome: EvaluationOutcome
    # Libellé affiché ("Skill max" pour le niveau au sommet)
    display_level: Optional[str] = None

    @classmethod
    def unlocked(
        cls,
        level: Optional[str],
        message: str = "Bravo, badge débloqué !",
        display_level: Optional[str] = None,
    ) -> "EvaluationResult":
        return cls(
            ok=True,
            level=level,
            message=message,
            outcome=EvaluationOutcome.UNLOCKED,
            display_level=display_level or level,
        )

    @classmethod
    def denied(cls, message: str) -> "EvaluationResult":
        return cls(ok=False, level=None, message=message, outcome=EvaluationOutcome.DENIED)

    @classmethod
    def invalid(cls, message: str) -> "EvaluationResult":
        return cls(ok=False, level=None, message=message, outcome=EvaluationOutcome.INVALID)


@dataclass(frozen=True)
class AggregateState:
    unlocked_badge_ids: frozenset = frozenset()
    levels: Mapping[BadgeId, Optional[str]] = field(default_factory=dict)
    skill_total: int = 0
    rank: str = ""
    unlocked_count: int = 0
    total_badge_count: int = 0
    low_skill_unlocked_count: int = 0

    def as_dict(self) -> dict:
        return {
            "unlocked_badge_ids": sorted(self.unlocked_badge_ids),
            "levels": {key: self.levels[key] for key in sorted(self.levels)},
            "skill_total": self.skill_total,
            "rank": self.rank,
            "unlocked_count": self.unlocked_count,
            "total_badge_count": self.total_badge_count,
            "low_skill_unlocked_count": self.low_skill_unlocked_count,
        }


class BadgeEventKind(str, Enum):
    UNLOCKED = "badge_unlocked"
    BLOCKED = "badge_blocked"
    REBLOCKED = "badge_reblocked"


@dataclass(frozen=True)
class BadgeEvent:
    """Événement transitoire destiné à l'affichage (notifications, animations)."""

    kind: BadgeEventKind
    user_id: UserId
    badge_id: BadgeId
    level: Optional[str] = None
    message: str = ""

    def as_payload(self) -> dict:
        return {
            "type": self.kind.value,
            "badge_id": self.badge_id,
            "level": self.level,
            "message": self.message,
        }
