"""Formatage des réponses et des niveaux pour l'affichage (profil, communauté)."""

from __future__ import annotations

import re
from typing import Optional

from app.gamification.badge_rules import (
    BooleanRule,
    GhostRule,
    MultiSelectRule,
    SingleSelectRule,
    find_level,
    is_expert_label,
    rule_levels,
    unwrap,
)
from app.gamification.evaluator import split_answer
from app.gamification.types import BadgeDefinition, DisplayMode

LOCKED_TAG = "À débloquer · ?/?"
DEFAULT_EMOJI = "🏅"


def _wrap(badge: BadgeDefinition, value: str) -> str:
    if not value:
        return value
    parts = [badge.display.prefix, value, badge.display.suffix]
    return " ".join(part for part in parts if part).strip()


def _option_label(rule, value: str) -> str:
    for option in rule.options:
        if option.value == value:
            return option.label or value
    return value


def format_user_answer(badge: BadgeDefinition, answer: Optional[str]) -> str:
    """Texte affiché à la place de la réponse brute d'un utilisateur.

    Badges fantômes: texte fantôme s'il est défini (il n'y a pas de réponse).
    Oui/non: texte de remplacement s'il est défini. Choix multiples: nombre de
    choix (par défaut) ou liste des libellés. Sinon la valeur, entourée du
    préfixe et du suffixe configurés.
    """
    rule = badge.rule
    if isinstance(rule, GhostRule):
        if rule.ghost_display_text:
            return rule.ghost_display_text
        rule = rule.inner

    raw = (answer or "").strip()
    if isinstance(rule, BooleanRule):
        is_true = raw.lower() in rule.true_labels
        text = rule.display_text_true if is_true else rule.display_text_false
        if text:
            return text

    if isinstance(rule, MultiSelectRule):
        values = split_answer(raw)
        if badge.display.multi_display_mode is DisplayMode.LIST:
            return _wrap(badge, ", ".join(_option_label(rule, value) for value in values))
        return _wrap(badge, str(len(values)))

    if isinstance(rule, SingleSelectRule):
        return _wrap(badge, _option_label(rule, raw))

    return _wrap(badge, raw)


def _normalize_skill_text(text: str) -> str:
    # Anciens libellés "niv"/"niveau" => "Skill"
    text = re.sub(r"\bniveaux\b", "Skills", text, flags=re.IGNORECASE)
    text = re.sub(r"\bniveau\b", "Skill", text, flags=re.IGNORECASE)
    return re.sub(r"\bniv\b", "Skill", text, flags=re.IGNORECASE)


def format_level_tag(badge: BadgeDefinition, unlocked: bool, level: Optional[str]) -> str:
    if not unlocked:
        return LOCKED_TAG
    if is_expert_label(level):
        return "Débloqué · Expert"

    rule = unwrap(badge.rule)
    total = len(rule_levels(rule))
    if total and level:
        position, spec = find_level(rule, level)
        if spec is not None:
            return f"Débloqué · Skill {position}/{total}"
    if level:
        return _normalize_skill_text(f"Débloqué · {level}")
    return "Skill débloqué"


def badge_emoji(badge: BadgeDefinition) -> str:
    return badge.emoji or DEFAULT_EMOJI
