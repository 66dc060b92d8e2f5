"""Exceptions du moteur de badges.

Seules les erreurs d'entrée/sortie (``WriteError``) traversent la frontière
du moteur. Les autres sont soit récupérées localement (``ConfigParseError``,
``CycleGuardTripped``), soit transportées comme résultats typés
(``AnswerValidationError``, ``UnlockDenied``).
"""
from __future__ import annotations


class BadgeEngineError(Exception):
    """Base class for every badge engine error."""


class ConfigParseError(BadgeEngineError):
    """A badge configuration blob could not be turned into a typed rule."""


class AnswerValidationError(BadgeEngineError):
    """The submitted answer is empty or malformed (inline user message)."""

    def __init__(self, message: str, *, badge_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.badge_id = badge_id


class UnlockDenied(BadgeEngineError):
    """A well-formed answer that legitimately fails the badge rule."""

    def __init__(self, message: str, *, badge_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.badge_id = badge_id


class WriteError(BadgeEngineError):
    """The persistence layer rejected a read or a write."""

    def __init__(self, message: str, *, user_id: str | None = None, badge_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.badge_id = badge_id


class CycleGuardTripped(BadgeEngineError):
    """The ghost fixed-point iteration reached its bound without converging."""

    def __init__(self, iterations: int, unresolved: frozenset[str]) -> None:
        super().__init__(
            f"ghost resolution stopped after {iterations} passes, unresolved={sorted(unresolved)}"
        )
        self.iterations = iterations
        self.unresolved = unresolved
