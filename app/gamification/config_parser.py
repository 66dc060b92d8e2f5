"""Parse raw badge configuration blobs into typed rules.

Badges store their unlock rule in a loosely-typed ``answer`` column. Modern
rows hold a JSON object with a ``type`` discriminator; legacy rows hold the
bare expected answer. This module is the single place where that untyped
input is inspected, every other component works on ``BadgeRule`` variants.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from app.gamification.badge_rules import (
    DEFAULT_FALSE_LABELS,
    DEFAULT_TRUE_LABELS,
    BadgeRule,
    BooleanRule,
    FreeTextRule,
    GhostPrerequisite,
    GhostRule,
    LevelSpec,
    MultiSelectMode,
    MultiSelectRule,
    OptionSpec,
    PrerequisiteMode,
    RangeRule,
    SingleSelectRule,
)
from app.gamification.errors import ConfigParseError
from app.gamification.types import DisplayMode, DisplayOptions

logger = logging.getLogger(__name__)

RawConfig = Union[str, Mapping[str, Any], None]


def parse_badge_config(raw: RawConfig) -> BadgeRule:
    """Return the typed rule for ``raw``.

    Anything that is not a JSON object carrying a ``type`` (or a valid ghost
    wrapper) falls back to a case-insensitive free-text match on the raw
    string. This is the legacy format, not an error.
    """
    try:
        config = _load_mapping(raw)
        ghost = _parse_ghost(config)
        if ghost is not None:
            return ghost
        return _parse_variant(config)
    except ConfigParseError as exc:
        logger.debug("Configuration de badge non typée (%s), repli texte libre.", exc)
        return _fallback_rule(raw)


def parse_display_options(raw: RawConfig) -> DisplayOptions:
    try:
        config = _load_mapping(raw)
    except ConfigParseError:
        return DisplayOptions()
    mode = DisplayMode.LIST if config.get("multiDisplayMode") == "list" else DisplayMode.COUNT
    return DisplayOptions(
        prefix=_clean_text(config.get("displayPrefix")),
        suffix=_clean_text(config.get("displaySuffix")),
        multi_display_mode=mode,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _load_mapping(raw: RawConfig) -> Mapping[str, Any]:
    if raw is None:
        raise ConfigParseError("empty configuration")
    if isinstance(raw, Mapping):
        return raw
    if not isinstance(raw, str):
        raise ConfigParseError(f"unsupported configuration type {type(raw).__name__}")
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise ConfigParseError("configuration is not JSON") from exc
    if not isinstance(decoded, dict):
        raise ConfigParseError("configuration is not a JSON object")
    return decoded


def _fallback_rule(raw: RawConfig) -> FreeTextRule:
    if isinstance(raw, str):
        return FreeTextRule(expected_answer=raw.strip().lower())
    return FreeTextRule(expected_answer="")


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

def _parse_variant(config: Mapping[str, Any]) -> BadgeRule:
    kind = config.get("type")
    if not kind:
        raise ConfigParseError("missing type discriminator")

    if kind == "boolean":
        return _parse_boolean(config)
    if kind == "singleSelect":
        return SingleSelectRule(
            options=_parse_options(config.get("options")),
            option_skill_labels=_parse_option_skills(config.get("optionSkills")),
            levels=_parse_levels(config.get("levels")),
        )
    if kind == "multiSelect":
        mode = MultiSelectMode.BY_OPTION if config.get("multiSkillMode") == "option" else MultiSelectMode.BY_COUNT
        return MultiSelectRule(
            options=_parse_options(config.get("options")),
            option_skill_labels=_parse_option_skills(config.get("optionSkills")),
            levels=_parse_levels(config.get("levels")),
            mode=mode,
        )
    if kind == "range":
        return RangeRule(
            min=_to_float(config.get("min")),
            max=_to_float(config.get("max")),
            levels=_parse_levels(config.get("levels")),
            expected=_to_float(config.get("expected")),
        )
    if kind == "text":
        expected = config.get("expectedAnswer", config.get("expected"))
        return FreeTextRule(expected_answer=str(expected or "").strip().lower())
    raise ConfigParseError(f"unknown badge type {kind!r}")


def _parse_boolean(config: Mapping[str, Any]) -> BooleanRule:
    shared_text = _clean_text(config.get("booleanDisplayText"))
    return BooleanRule(
        true_labels=_parse_labels(config.get("trueLabels"), DEFAULT_TRUE_LABELS),
        false_labels=_parse_labels(config.get("falseLabels"), DEFAULT_FALSE_LABELS),
        expected=config.get("expected") is not False,
        skill_points=_to_positive_int(config.get("skillPoints")),
        display_text_true=_clean_text(config.get("displayTextTrue")) or shared_text,
        display_text_false=_clean_text(config.get("displayTextFalse")) or shared_text,
    )


def _parse_ghost(config: Mapping[str, Any]) -> Optional[GhostRule]:
    if config.get("isGhost") is not True:
        return None
    prerequisite = GhostPrerequisite(
        mode=PrerequisiteMode.ANY if config.get("prereqMode") == "any" else PrerequisiteMode.ALL,
        required_badge_ids=tuple(
            str(badge_id) for badge_id in _as_list(config.get("requiredBadges")) if str(badge_id).strip()
        ),
        min_unlocked_count=_to_positive_int(config.get("minBadges")) or 0,
        min_skill_points=_to_positive_int(config.get("minSkills")) or 0,
        min_rank=_clean_text(config.get("minRank")),
    )
    if prerequisite.is_empty():
        # Sans prérequis, le drapeau est ignoré: badge visible et non conditionné
        return None
    try:
        inner = _parse_variant(config)
    except ConfigParseError:
        inner = FreeTextRule(expected_answer="")
    return GhostRule(
        prerequisite=prerequisite,
        inner=inner,
        skill_points=_to_positive_int(config.get("skillPoints")),
        ghost_display_text=_clean_text(config.get("ghostDisplayText")),
    )


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _parse_options(raw: Any) -> Tuple[OptionSpec, ...]:
    options = []
    for item in _as_list(raw):
        if isinstance(item, Mapping):
            value = item.get("value")
            if value is None:
                continue
            label = item.get("label")
            options.append(OptionSpec(value=str(value), label=str(label if label is not None else value)))
        elif item is not None:
            options.append(OptionSpec(value=str(item), label=str(item)))
    return tuple(options)


def _parse_option_skills(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value if value is not None else "").strip() for key, value in raw.items()}


def _parse_levels(raw: Any) -> Tuple[LevelSpec, ...]:
    levels = []
    for item in _as_list(raw):
        if not isinstance(item, Mapping):
            continue
        label = item.get("label")
        if label is None:
            continue
        levels.append(
            LevelSpec(
                label=str(label),
                min=_to_float(item.get("min")),
                max=_to_float(item.get("max")),
                points=_to_positive_int(item.get("points")),
            )
        )
    return tuple(levels)


def _parse_labels(raw: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return default
    return tuple(str(label).strip().lower() for label in raw if str(label).strip())


def _as_list(raw: Any) -> list:
    return raw if isinstance(raw, list) else []


def _clean_text(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    return text or None


def _to_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool) or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _to_positive_int(raw: Any) -> Optional[int]:
    value = _to_float(raw)
    if value is None or value <= 0:
        return None
    return int(value)
