"""Badge catalog: immutable badge definitions for one session."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from app.gamification.config_parser import parse_badge_config, parse_display_options
from app.gamification.types import BadgeDefinition, BadgeId

DEFAULT_THEME = "Autres"


def _text(row: Mapping[str, Any], key: str, default: str = "") -> str:
    value = row.get(key)
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _optional_text(row: Mapping[str, Any], key: str) -> Optional[str]:
    value = _text(row, key)
    return value or None


def build_badge_definition(row: Mapping[str, Any]) -> BadgeDefinition:
    """Construit une définition depuis une ligne de catalogue.

    Les colonnes optionnelles absentes (``emoji``, ``low_skill``, ``theme``…)
    prennent leur valeur par défaut au lieu de faire échouer le chargement.
    """
    raw_config = row.get("answer")
    return BadgeDefinition(
        id=str(row["id"]),
        name=_text(row, "name", default=str(row["id"])),
        rule=parse_badge_config(raw_config),
        expert_name=_optional_text(row, "expert_name"),
        emoji=_optional_text(row, "emoji"),
        description=_text(row, "description"),
        question=_text(row, "question"),
        theme=_text(row, "theme", default=DEFAULT_THEME),
        low_skill=row.get("low_skill") is True,
        display=parse_display_options(raw_config),
    )


class BadgeCatalog:
    """Ordered, read-only collection of badge definitions."""

    def __init__(self, badges: Iterable[BadgeDefinition] = ()) -> None:
        self._badges: Dict[BadgeId, BadgeDefinition] = {}
        for badge in badges:
            self._badges[badge.id] = badge

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "BadgeCatalog":
        return cls(build_badge_definition(row) for row in rows if row.get("id") is not None)

    def __len__(self) -> int:
        return len(self._badges)

    def __iter__(self) -> Iterator[BadgeDefinition]:
        return iter(self._badges.values())

    def __contains__(self, badge_id: object) -> bool:
        return badge_id in self._badges

    def get(self, badge_id: BadgeId) -> Optional[BadgeDefinition]:
        return self._badges.get(badge_id)

    def ghost_badges(self) -> List[BadgeDefinition]:
        return [badge for badge in self._badges.values() if badge.is_ghost]

    def visible_badges(self) -> List[BadgeDefinition]:
        return [badge for badge in self._badges.values() if not badge.is_ghost]

    def low_skill_ids(self) -> frozenset:
        return frozenset(badge.id for badge in self._badges.values() if badge.low_skill)
