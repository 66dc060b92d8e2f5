"""Per-user owner of the badge aggregate.

``AggregateReconciler`` keeps the user's records, applies answers and remote
changes one at a time, and exposes the derived :class:`AggregateState`.
Every public operation is queued and drained strictly in arrival order by a
single task, so a change notification that lands while an answer is being
written waits for that answer's ghost pass and recompute to finish.

The store is written first and local state only moves once the write has
succeeded; a failed write leaves the aggregate untouched.
The feed also reports the reconciler's own writes back; those echoes are
recognised and dropped so an older record never replaces a newer one.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from app.gamification.badge_rules import LEVEL_ZERO
from app.gamification.catalog import BadgeCatalog
from app.gamification.errors import WriteError
from app.gamification.evaluator import AnswerEvaluator
from app.gamification.ghost_resolver import GhostResolver
from app.gamification.scoring import ScoreCalculator
from app.gamification.types import (
    AggregateState,
    BadgeEvent,
    BadgeEventKind,
    BadgeId,
    EvaluationOutcome,
    EvaluationResult,
    UserBadgeRecord,
    UserId,
)
from app.persistence.base import ChangeEvent, ChangeKind, PersistenceAdapter, Unsubscribe

logger = logging.getLogger(__name__)

WRITE_FAILED_MESSAGE = "Erreur, merci de réessayer."
UNKNOWN_BADGE_MESSAGE = "Badge introuvable."
GHOST_UNLOCKED_MESSAGE = "Badge fantôme débloqué !"
REBLOCKED_MESSAGE = "Badge bloqué suite à des soupçons."

Listener = Callable[[BadgeEvent], None]
# Écritures propres gardées par badge en attendant leur écho sur le flux
OWN_WRITES_LIMIT = 16


def build_aggregate(
    catalog: BadgeCatalog,
    records: Iterable[UserBadgeRecord],
    scorer: Optional[ScoreCalculator] = None,
    resolver: Optional[GhostResolver] = None,
) -> AggregateState:
    """Derive the aggregate from ``(catalog, records)`` and nothing else.

    Records for badges missing from the catalog are ignored. Records blocked
    by moderation count neither in the unlocked set nor in the score; a
    blocked ghost is never granted by the resolver either.
    """
    resolver = resolver or GhostResolver(scorer=scorer)
    scorer = scorer or resolver.scorer

    by_badge: Dict[BadgeId, UserBadgeRecord] = {}
    for record in records:
        by_badge[record.badge_id] = record

    base_levels: Dict[BadgeId, Optional[str]] = {}
    blocked_ghosts = set()
    for badge_id, record in by_badge.items():
        badge = catalog.get(badge_id)
        if badge is None:
            continue
        if badge.is_ghost:
            if record.blocked_by_suspicion:
                blocked_ghosts.add(badge_id)
            continue
        if record.counts_as_unlocked:
            base_levels[badge_id] = record.level

    resolution = resolver.resolve(catalog, base_levels, excluded_ids=blocked_ghosts)

    levels: Dict[BadgeId, Optional[str]] = dict(base_levels)
    for badge_id in resolution.unlocked_ids:
        levels[badge_id] = None

    skill_total = sum(scorer.points(catalog.get(badge_id), level) for badge_id, level in levels.items())
    low_skill_ids = catalog.low_skill_ids()
    return AggregateState(
        unlocked_badge_ids=frozenset(levels),
        levels=levels,
        skill_total=skill_total,
        rank=resolver.rank_table.rank_for(skill_total).name,
        unlocked_count=len(levels),
        total_badge_count=len(catalog.visible_badges()) + len(resolution.unlocked_ids),
        low_skill_unlocked_count=sum(1 for badge_id in levels if badge_id in low_skill_ids),
    )


class ReconcilerState(str, Enum):
    IDLE = "idle"
    APPLYING = "applying"


class AnswerStatus(str, Enum):
    UNLOCKED = "unlocked"
    DENIED = "denied"
    INVALID = "invalid"
    WRITE_FAILED = "write_failed"


@dataclass(frozen=True)
class AnswerOutcome:
    status: AnswerStatus
    aggregate: AggregateState
    message: str
    evaluation: Optional[EvaluationResult] = None

    @property
    def ok(self) -> bool:
        return self.status is AnswerStatus.UNLOCKED


_Operation = Callable[[], Awaitable[Any]]
_Pending = Tuple[_Operation, Optional["asyncio.Future[Any]"]]


class AggregateReconciler:
    """Owns the aggregate of one user session.

    Not thread-safe: operations must be submitted from the event loop the
    reconciler was started in. ``handle_change`` is the one entry point that
    may be called from another thread (change feeds published from sync
    request handlers).
    """

    def __init__(
        self,
        user_id: UserId,
        catalog: BadgeCatalog,
        adapter: PersistenceAdapter,
        evaluator: Optional[AnswerEvaluator] = None,
        scorer: Optional[ScoreCalculator] = None,
        resolver: Optional[GhostResolver] = None,
    ) -> None:
        self.user_id = user_id
        self.catalog = catalog
        self.adapter = adapter
        self.evaluator = evaluator or AnswerEvaluator()
        self.scorer = scorer or ScoreCalculator()
        self.resolver = resolver or GhostResolver(scorer=self.scorer)

        self._records: Dict[BadgeId, UserBadgeRecord] = {}
        self._aggregate = AggregateState()
        self._state = ReconcilerState.IDLE
        self._queue: Deque[_Pending] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._own_writes: Dict[BadgeId, Deque[UserBadgeRecord]] = {}

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def aggregate(self) -> AggregateState:
        return self._aggregate

    @property
    def records(self) -> Mapping[BadgeId, UserBadgeRecord]:
        return dict(self._records)

    @property
    def pending_operations(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Subscribe to the adapter's change notifications."""
        if self._unsubscribe is not None:
            return
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._unsubscribe = self.adapter.on_change(self.user_id, self.handle_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def wait_until_idle(self) -> None:
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    # ------------------------------------------------------------------
    # Public operations (queued)
    # ------------------------------------------------------------------
    async def load(self) -> AggregateState:
        """Read the user's records, run a ghost pass and publish the aggregate.

        Raises ``WriteError`` when the store cannot be read.
        """
        return await self._submit(self._load)

    async def apply_answer(
        self,
        badge_id: BadgeId,
        raw_answer: Optional[str],
        options: Sequence[str] = (),
    ) -> AnswerOutcome:
        return await self._submit(partial(self._apply_answer, badge_id, raw_answer, tuple(options)))

    async def apply_remote_change(self, event: ChangeEvent) -> AggregateState:
        return await self._submit(partial(self._merge_remote, event))

    def handle_change(self, event: ChangeEvent) -> None:
        """Change-feed callback: queue the event without waiting for it."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None and (self._loop is None or running is self._loop):
            self._enqueue(partial(self._merge_remote, event), None)
            return
        if self._loop is None or self._loop.is_closed():
            logger.warning(
                "Changement %s ignoré pour %s: aucune boucle active (badge=%s)",
                event.kind.value,
                self.user_id,
                event.record.badge_id,
            )
            return
        self._loop.call_soon_threadsafe(self._enqueue, partial(self._merge_remote, event), None)

    def recompute_aggregate(self) -> AggregateState:
        """Recompute the aggregate from the current records (idempotent)."""
        self._aggregate = build_aggregate(self.catalog, self._records.values(), self.scorer, self.resolver)
        return self._aggregate

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    async def _submit(self, operation: _Operation) -> Any:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._enqueue(operation, future)
        return await future

    def _enqueue(self, operation: _Operation, future: Optional[asyncio.Future]) -> None:
        self._queue.append((operation, future))
        if self._state is ReconcilerState.APPLYING:
            return
        # Passe en APPLYING avant toute suspension pour que les appels suivants attendent
        self._state = ReconcilerState.APPLYING
        self._drain_task = asyncio.get_running_loop().create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        try:
            while self._queue:
                operation, future = self._queue.popleft()
                try:
                    result = await operation()
                except Exception as exc:
                    if future is None:
                        logger.exception("Opération badge en échec pour %s", self.user_id)
                    elif not future.done():
                        future.set_exception(exc)
                    continue
                if future is not None and not future.done():
                    future.set_result(result)
        finally:
            self._state = ReconcilerState.IDLE

    # ------------------------------------------------------------------
    # Operation bodies (run only from the drain task)
    # ------------------------------------------------------------------
    async def _load(self) -> AggregateState:
        records = await self.adapter.read_user_badges(self.user_id)
        self._records = {record.badge_id: record for record in records if record.user_id == self.user_id}
        await self._sync_ghost_records()
        self.recompute_aggregate()
        await self._sync_profile()
        logger.info(
            "Badges chargés pour %s: %s débloqués, %s skills (%s)",
            self.user_id,
            self._aggregate.unlocked_count,
            self._aggregate.skill_total,
            self._aggregate.rank,
        )
        return self._aggregate

    async def _apply_answer(
        self,
        badge_id: BadgeId,
        raw_answer: Optional[str],
        options: Tuple[str, ...],
    ) -> AnswerOutcome:
        badge = self.catalog.get(badge_id)
        if badge is None:
            return AnswerOutcome(AnswerStatus.INVALID, self._aggregate, UNKNOWN_BADGE_MESSAGE)

        evaluation = self.evaluator.evaluate(badge.rule, raw_answer, options)
        if evaluation.outcome is EvaluationOutcome.INVALID:
            return AnswerOutcome(AnswerStatus.INVALID, self._aggregate, evaluation.message, evaluation)

        previous = self._records.get(badge_id)
        record = UserBadgeRecord(
            user_id=self.user_id,
            badge_id=badge_id,
            success=evaluation.ok,
            level=evaluation.level if evaluation.ok else LEVEL_ZERO,
            user_answer=",".join(options) if options else (raw_answer or "").strip(),
            was_ever_unlocked=evaluation.ok or bool(previous and previous.was_ever_unlocked),
            blocked_by_suspicion=bool(previous and previous.blocked_by_suspicion),
        )
        try:
            await self._write(record)
        except WriteError as exc:
            logger.warning("Écriture refusée pour %s/%s: %s", self.user_id, badge_id, exc)
            return AnswerOutcome(AnswerStatus.WRITE_FAILED, self._aggregate, WRITE_FAILED_MESSAGE, evaluation)

        self._records[badge_id] = record
        await self._settle()

        if evaluation.ok:
            self._emit(BadgeEventKind.UNLOCKED, badge_id, evaluation.display_level, evaluation.message)
            status = AnswerStatus.UNLOCKED
        else:
            self._emit(BadgeEventKind.BLOCKED, badge_id, None, evaluation.message)
            status = AnswerStatus.DENIED
        return AnswerOutcome(status, self._aggregate, evaluation.message, evaluation)

    async def _merge_remote(self, event: ChangeEvent) -> AggregateState:
        record = event.record
        if record.user_id != self.user_id:
            return self._aggregate
        if self._is_own_echo(event):
            return self._aggregate

        # Dernier arrivé gagne: l'ordre d'arrivée fait foi
        previous = self._records.get(record.badge_id)
        if event.kind is ChangeKind.DELETE:
            self._records.pop(record.badge_id, None)
        else:
            self._records[record.badge_id] = record

        await self._settle()

        newly_blocked = (
            event.kind is not ChangeKind.DELETE
            and record.blocked_by_suspicion
            and previous is not None
            and previous.counts_as_unlocked
        )
        if newly_blocked:
            self._emit(BadgeEventKind.REBLOCKED, record.badge_id, previous.level, REBLOCKED_MESSAGE)
        return self._aggregate

    async def _settle(self) -> None:
        """Ghost pass, recompute, then profile sync when the aggregate moved."""
        before = self._aggregate
        await self._sync_ghost_records()
        after = self.recompute_aggregate()
        if after != before:
            await self._sync_profile()

    async def _sync_ghost_records(self) -> None:
        """Write the records of ghosts whose membership flipped.

        Newly qualifying ghosts are upserted as unlocked without level;
        disqualified ones are relocked, keeping ``was_ever_unlocked``. A ghost
        blocked by moderation is left as is. Failed writes are logged and
        retried on the next pass.
        """
        target = build_aggregate(self.catalog, self._records.values(), self.scorer, self.resolver)
        for badge in self.catalog.ghost_badges():
            current = self._records.get(badge.id)
            held = current is not None and current.success
            qualifies = badge.id in target.unlocked_badge_ids

            if qualifies and not held:
                updated = UserBadgeRecord(
                    user_id=self.user_id,
                    badge_id=badge.id,
                    success=True,
                    level=None,
                    user_answer=None,
                    was_ever_unlocked=True,
                    blocked_by_suspicion=False,
                )
            elif held and not qualifies and not current.blocked_by_suspicion:
                updated = current.relocked()
            else:
                continue

            try:
                await self._write(updated)
            except WriteError as exc:
                logger.warning("Badge fantôme %s non synchronisé pour %s: %s", badge.id, self.user_id, exc)
                continue

            self._records[badge.id] = updated
            if updated.success:
                self._emit(BadgeEventKind.UNLOCKED, badge.id, None, GHOST_UNLOCKED_MESSAGE)
            else:
                logger.info("Badge fantôme %s rebloqué pour %s", badge.id, self.user_id)

    async def _write(self, record: UserBadgeRecord) -> None:
        """Upsert ``record``, remembering it so its feed echo can be recognised."""
        pending = self._own_writes.setdefault(record.badge_id, deque(maxlen=OWN_WRITES_LIMIT))
        pending.append(record)
        try:
            await self.adapter.upsert_user_badge(record)
        except WriteError:
            if record in pending:
                pending.remove(record)
            raise

    def _is_own_echo(self, event: ChangeEvent) -> bool:
        """True when ``event`` reports one of our own writes.

        The echo is dropped: local state already holds that record or a
        newer one, and merging it again would roll the badge back one step.
        Echoes of one badge arrive in write order, so earlier pending writes
        are discarded with it.
        """
        if event.kind is ChangeKind.DELETE:
            return False
        pending = self._own_writes.get(event.record.badge_id)
        if not pending or event.record not in pending:
            return False
        while pending:
            if pending.popleft() == event.record:
                break
        return True

    async def _sync_profile(self) -> None:
        aggregate = self._aggregate
        try:
            await self.adapter.save_profile_stats(
                self.user_id,
                badge_count=aggregate.unlocked_count,
                skill_points=aggregate.skill_total,
                rank=aggregate.rank,
            )
        except WriteError as exc:
            logger.warning("Compteurs du profil %s non mis à jour: %s", self.user_id, exc)

    def _emit(self, kind: BadgeEventKind, badge_id: BadgeId, level: Optional[str], message: str) -> None:
        event = BadgeEvent(kind=kind, user_id=self.user_id, badge_id=badge_id, level=level, message=message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Écouteur d'événements badge en erreur (%s)", kind.value)
