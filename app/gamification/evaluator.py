"""Evaluate a submitted answer against a badge rule.

Each variant handler either returns the unlock result or raises
``UnlockDenied`` / ``AnswerValidationError``; :meth:`AnswerEvaluator.evaluate`
is the boundary that turns those into typed ``EvaluationResult`` values, so
callers never see an exception from here.
"""

from __future__ import annotations

import math
from typing import Dict, Optional, Sequence

from app.gamification.badge_rules import (
    EXPERT_LABEL,
    MAX_LEVEL_LABEL,
    BadgeRule,
    BooleanRule,
    FreeTextRule,
    GhostRule,
    LevelSpec,
    MultiSelectMode,
    MultiSelectRule,
    RangeRule,
    SingleSelectRule,
    is_expert_label,
    is_no_skill_label,
    is_veto_label,
    top_level,
)
from app.gamification.errors import AnswerValidationError, UnlockDenied
from app.gamification.types import EvaluationResult

VETO_MESSAGE = "Ce choix ne permet pas de débloquer ce badge."


def stored_level_label(label: Optional[str]) -> Optional[str]:
    """Libellé enregistré pour un niveau atteint (un niveau expert devient "Expert")."""
    if label is None:
        return None
    if is_expert_label(label):
        return EXPERT_LABEL
    return label


def display_level_label(label: Optional[str], *, is_top: bool = False) -> Optional[str]:
    """Libellé affiché: le niveau au sommet d'une variante ordonnée devient
    "Skill max", sauf s'il est expert (l'expert l'emporte toujours).
    """
    stored = stored_level_label(label)
    if stored is None or stored == EXPERT_LABEL:
        return stored
    return MAX_LEVEL_LABEL if is_top else stored


def split_answer(raw_answer: str) -> list[str]:
    return [value.strip() for value in (raw_answer or "").split(",") if value.strip()]


class AnswerEvaluator:
    """Stateless evaluator, safe to share between sessions."""

    def evaluate(
        self,
        rule: BadgeRule,
        raw_answer: Optional[str],
        selected_options: Sequence[str] = (),
    ) -> EvaluationResult:
        answer = (raw_answer or "").strip()
        selected = [str(value) for value in selected_options if str(value).strip()]
        try:
            if isinstance(rule, GhostRule):
                raise AnswerValidationError("Ce badge se débloque automatiquement.")
            if isinstance(rule, MultiSelectRule):
                return self._evaluate_multi_select(rule, selected or split_answer(answer))
            if isinstance(rule, SingleSelectRule):
                return self._evaluate_single_select(rule, answer or (selected[0] if selected else ""))
            if isinstance(rule, RangeRule):
                return self._evaluate_range(rule, answer)
            if isinstance(rule, BooleanRule):
                return self._evaluate_boolean(rule, answer)
            return self._evaluate_free_text(rule, answer)
        except AnswerValidationError as exc:
            return EvaluationResult.invalid(exc.message)
        except UnlockDenied as exc:
            return EvaluationResult.denied(exc.message)

    # ------------------------------------------------------------------
    # Select variants
    # ------------------------------------------------------------------
    @staticmethod
    def _check_veto(skill_labels: Dict[str, str], selected: Sequence[str]) -> None:
        for value in selected:
            if value in skill_labels and is_veto_label(skill_labels[value]):
                raise UnlockDenied(VETO_MESSAGE)

    def _evaluate_multi_select(self, rule: MultiSelectRule, selected: Sequence[str]) -> EvaluationResult:
        if not selected:
            raise AnswerValidationError("Choisis au moins une option.")

        self._check_veto(rule.option_skill_labels, selected)

        if rule.mode is MultiSelectMode.BY_OPTION:
            return self._evaluate_by_option(rule, selected)
        # Par nombre: une option "aucun" cochée bloque aussi le badge
        for value in selected:
            if value in rule.option_skill_labels and is_no_skill_label(rule.option_skill_labels[value]):
                raise UnlockDenied(VETO_MESSAGE)
        return self._evaluate_by_count(rule, len(selected))

    def _evaluate_by_option(self, rule: MultiSelectRule, selected: Sequence[str]) -> EvaluationResult:
        ranking = [level.label for level in rule.levels] or list(dict.fromkeys(rule.option_skill_labels.values()))
        positions = {label.strip().lower(): index for index, label in enumerate(ranking)}

        best_label: Optional[str] = None
        best_rank = -math.inf
        for value in selected:
            label = rule.option_skill_labels.get(value, "").strip()
            if not label or is_no_skill_label(label):
                continue
            if is_expert_label(label):
                best_label, best_rank = EXPERT_LABEL, math.inf
                continue
            # Les libellés hors classement passent derrière tous les autres
            rank = positions.get(label.lower(), -1)
            if best_label is None or rank > best_rank:
                best_label, best_rank = label, rank

        if best_label is None:
            raise UnlockDenied("Aucun skill valide sélectionné. Le badge ne peut pas être débloqué.")
        return EvaluationResult.unlocked(stored_level_label(best_label))

    def _evaluate_by_count(self, rule: MultiSelectRule, count: int) -> EvaluationResult:
        if not rule.levels:
            return EvaluationResult.unlocked(None)

        thresholds = sorted(rule.levels, key=lambda level: level.min or 0, reverse=True)
        reached = next((level for level in thresholds if count >= (level.min or 0)), None)
        if reached is None:
            minimum = min(int(level.min or 0) for level in thresholds)
            raise UnlockDenied(f"Il faut au moins {minimum} choix pour débloquer ce badge.")

        is_top = reached is top_level(rule)
        return EvaluationResult.unlocked(
            stored_level_label(reached.label),
            display_level=display_level_label(reached.label, is_top=is_top),
        )

    def _evaluate_single_select(self, rule: SingleSelectRule, value: str) -> EvaluationResult:
        if not value:
            raise AnswerValidationError("Choisis une option.")
        if rule.options and not any(option.value == value for option in rule.options):
            raise AnswerValidationError("Option invalide.")

        if not rule.option_skill_labels:
            return EvaluationResult.unlocked(None)

        self._check_veto(rule.option_skill_labels, [value])
        label = rule.option_skill_labels.get(value)
        if label is None or is_no_skill_label(label):
            raise UnlockDenied(VETO_MESSAGE)
        return EvaluationResult.unlocked(stored_level_label(label))

    # ------------------------------------------------------------------
    # Scalar variants
    # ------------------------------------------------------------------
    def _evaluate_range(self, rule: RangeRule, answer: str) -> EvaluationResult:
        try:
            value = float(answer)
        except ValueError:
            raise AnswerValidationError("Merci de saisir un nombre.") from None
        if not math.isfinite(value):
            raise AnswerValidationError("Merci de saisir un nombre.")

        if rule.levels:
            level = self._find_range_level(rule.levels, value)
            if level is None:
                raise UnlockDenied("Valeur hors des skills.")
            shown = display_level_label(level.label, is_top=level is rule.levels[-1])
            return EvaluationResult.unlocked(
                stored_level_label(level.label),
                message=f"Bravo, skill obtenu : {shown}",
                display_level=shown,
            )

        bounds = LevelSpec(label="", min=rule.min, max=rule.max)
        if not bounds.contains(value):
            raise UnlockDenied("Valeur hors des limites.")
        if rule.expected is not None and value != rule.expected:
            raise UnlockDenied("Réponse incorrecte.")
        return EvaluationResult.unlocked(None)

    @staticmethod
    def _find_range_level(levels: Sequence[LevelSpec], value: float) -> Optional[LevelSpec]:
        for level in levels:
            if level.contains(value):
                return level
        return None

    def _evaluate_boolean(self, rule: BooleanRule, answer: str) -> EvaluationResult:
        lower = answer.lower()
        is_true = lower in {label.lower() for label in rule.true_labels}
        is_false = lower in {label.lower() for label in rule.false_labels}
        if not is_true and not is_false:
            raise AnswerValidationError("Réponds par oui ou non.")
        if is_true == rule.expected:
            return EvaluationResult.unlocked(None)
        raise UnlockDenied("Réponse incorrecte.")

    def _evaluate_free_text(self, rule: FreeTextRule, answer: str) -> EvaluationResult:
        if not answer:
            raise AnswerValidationError("Écris une réponse avant de valider.")
        expected = rule.expected_answer.strip().lower()
        if expected and answer.lower() == expected:
            return EvaluationResult.unlocked(None)
        raise UnlockDenied("Mauvaise réponse, réessaie.")
