"""Fixed-point resolution of ghost (prerequisite-gated) badges.

Ghost badges are never answered directly: they unlock when the aggregate
produced by the *other* badges (unlocked set, skill total, rank) satisfies
their prerequisites. Because a ghost may require another ghost, resolution
starts from the empty ghost set and adds qualifying ghosts pass after pass
until nothing changes, with a hard bound on the number of passes.

A cyclic configuration (A requires B, B requires A) therefore settles on
"neither unlocked": neither qualifies from the empty set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Dict, FrozenSet, Mapping, Optional, Set

from app.core.config import settings
from app.gamification.badge_rules import GhostPrerequisite, GhostRule, PrerequisiteMode
from app.gamification.catalog import BadgeCatalog
from app.gamification.errors import CycleGuardTripped
from app.gamification.scoring import RankTable, ScoreCalculator
from app.gamification.types import BadgeDefinition, BadgeId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateAggregate:
    """Aggregate view a prerequisite is checked against."""

    unlocked_ids: FrozenSet[BadgeId]
    skill_total: int
    rank: str


@dataclass(frozen=True)
class GhostResolution:
    unlocked_ids: FrozenSet[BadgeId]
    iterations: int
    converged: bool


def prerequisite_satisfied(
    prerequisite: GhostPrerequisite,
    candidate: CandidateAggregate,
    rank_table: RankTable,
) -> bool:
    """Check one prerequisite; each condition kind is a single check.

    ``ALL`` requires every configured kind, ``ANY`` at least one. The badge
    list counts as one kind: all listed badges must be unlocked for it to hold.
    """
    checks = []
    if prerequisite.required_badge_ids:
        checks.append(all(badge_id in candidate.unlocked_ids for badge_id in prerequisite.required_badge_ids))
    if prerequisite.min_unlocked_count > 0:
        checks.append(len(candidate.unlocked_ids) >= prerequisite.min_unlocked_count)
    if prerequisite.min_skill_points > 0:
        checks.append(candidate.skill_total >= prerequisite.min_skill_points)
    if (prerequisite.min_rank or "").strip():
        checks.append(rank_table.reaches(candidate.rank, prerequisite.min_rank))

    # Sécurité: aucun prérequis défini => jamais débloqué
    if not checks:
        return False
    if prerequisite.mode is PrerequisiteMode.ANY:
        return any(checks)
    return all(checks)


class GhostResolver:
    def __init__(
        self,
        scorer: Optional[ScoreCalculator] = None,
        rank_table: Optional[RankTable] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        self.scorer = scorer or ScoreCalculator()
        self.rank_table = rank_table or RankTable()
        self.max_iterations = max_iterations if max_iterations is not None else settings.GHOST_MAX_ITERATIONS

    def resolve(
        self,
        catalog: BadgeCatalog,
        base_levels: Mapping[BadgeId, Optional[str]],
        excluded_ids: Collection[BadgeId] = (),
    ) -> GhostResolution:
        """Return the ghost badges that should currently be unlocked.

        ``base_levels`` maps every unlocked non-ghost badge to its level.
        ``excluded_ids`` are ghosts that may never be granted (for example a
        record blocked by moderation).
        """
        all_ghosts = catalog.ghost_badges()
        ghost_ids = frozenset(badge.id for badge in all_ghosts)
        ghosts: Dict[BadgeId, BadgeDefinition] = {
            badge.id: badge for badge in all_ghosts if badge.id not in excluded_ids
        }
        base_ids = frozenset(badge_id for badge_id in base_levels if badge_id not in ghost_ids)
        base_skill = sum(
            self.scorer.points(catalog.get(badge_id), base_levels[badge_id])
            for badge_id in base_ids
            if catalog.get(badge_id) is not None
        )
        if not ghosts:
            return GhostResolution(unlocked_ids=frozenset(), iterations=0, converged=True)

        bound = len(catalog)
        if self.max_iterations:
            bound = min(bound, self.max_iterations)
        bound = max(bound, 1)
        accepted: Set[BadgeId] = set()
        iterations = 0
        converged = False
        try:
            while True:
                if iterations >= bound:
                    pending = frozenset(self._qualifying(ghosts, accepted, base_ids, base_skill))
                    if pending:
                        raise CycleGuardTripped(iterations, pending)
                    converged = True
                    break
                iterations += 1
                newly = self._qualifying(ghosts, accepted, base_ids, base_skill)
                if not newly:
                    converged = True
                    break
                accepted.update(newly)
        except CycleGuardTripped as exc:
            logger.warning("Résolution des badges fantômes interrompue: %s", exc)

        pruned = self._prune(ghosts, accepted, base_ids, base_skill)
        return GhostResolution(unlocked_ids=frozenset(pruned), iterations=iterations, converged=converged)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _candidate(
        self,
        ghosts: Mapping[BadgeId, BadgeDefinition],
        accepted: Collection[BadgeId],
        base_ids: FrozenSet[BadgeId],
        base_skill: int,
    ) -> CandidateAggregate:
        skill_total = base_skill + sum(self.scorer.points(ghosts[badge_id], None) for badge_id in accepted)
        return CandidateAggregate(
            unlocked_ids=base_ids | frozenset(accepted),
            skill_total=skill_total,
            rank=self.rank_table.rank_for(skill_total).name,
        )

    def _qualifying(
        self,
        ghosts: Mapping[BadgeId, BadgeDefinition],
        accepted: Set[BadgeId],
        base_ids: FrozenSet[BadgeId],
        base_skill: int,
    ) -> Set[BadgeId]:
        candidate = self._candidate(ghosts, accepted, base_ids, base_skill)
        newly = set()
        for badge_id, badge in ghosts.items():
            if badge_id in accepted:
                continue
            rule = badge.rule
            if isinstance(rule, GhostRule) and prerequisite_satisfied(rule.prerequisite, candidate, self.rank_table):
                newly.add(badge_id)
        return newly

    def _prune(
        self,
        ghosts: Mapping[BadgeId, BadgeDefinition],
        accepted: Set[BadgeId],
        base_ids: FrozenSet[BadgeId],
        base_skill: int,
    ) -> Set[BadgeId]:
        """Drop accepted ghosts whose prerequisites fail against the final aggregate.

        Ghosts granted in the same pass can invalidate one another (a low-skill
        ghost lowers the total). Removal only, so this terminates after at most
        ``len(accepted)`` passes and never re-adds a pruned ghost.
        """
        kept = set(accepted)
        while kept:
            failing = {
                badge_id
                for badge_id in kept
                if not prerequisite_satisfied(
                    ghosts[badge_id].rule.prerequisite,
                    self._candidate(ghosts, kept - {badge_id}, base_ids, base_skill),
                    self.rank_table,
                )
            }
            if not failing:
                break
            kept -= failing
        return kept
