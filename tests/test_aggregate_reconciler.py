import asyncio

import pytest

from app.gamification.badge_rules import LEVEL_ZERO
from app.gamification.reconciler import (
    GHOST_UNLOCKED_MESSAGE,
    WRITE_FAILED_MESSAGE,
    AggregateReconciler,
    AnswerStatus,
    ReconcilerState,
    build_aggregate,
)
from app.gamification.scoring import ScoreCalculator
from app.gamification.types import BadgeEventKind, UserBadgeRecord
from app.persistence.base import ChangeEvent, ChangeKind
from tests.utils import InMemoryAdapter, badge_row, make_catalog, unlocked

USER = "alice"


def _catalog():
    return make_catalog(
        *[badge_row(f"b{index}", "ok") for index in range(5)],
        badge_row("ghost", {"isGhost": True, "minBadges": 5}),
        badge_row(
            "voyage",
            {
                "type": "range",
                "levels": [
                    {"label": "niv1", "min": 0, "max": 9, "points": 1},
                    {"label": "niv2", "min": 10, "max": 99, "points": 5},
                ],
            },
        ),
        badge_row("fumeur", {"type": "boolean"}, low_skill=True),
    )


async def _reconciler(records=(), catalog=None):
    adapter = InMemoryAdapter(records)
    reconciler = AggregateReconciler(
        USER,
        catalog or _catalog(),
        adapter,
        scorer=ScoreCalculator(expert_bonus=10, low_skill_multiplier=2),
    )
    reconciler.start()
    await reconciler.load()
    return reconciler, adapter


def _four_badges():
    return [unlocked(USER, f"b{index}") for index in range(4)]


@pytest.mark.asyncio
async def test_load_builds_aggregate_and_saves_profile():
    reconciler, adapter = await _reconciler(_four_badges())

    aggregate = reconciler.aggregate
    assert aggregate.unlocked_badge_ids == frozenset({"b0", "b1", "b2", "b3"})
    assert aggregate.skill_total == 4
    assert aggregate.rank == "Débutant"
    # Les fantômes verrouillés ne comptent pas dans le total affiché
    assert aggregate.total_badge_count == 7
    assert adapter.profile_stats[USER] == {"badge_count": 4, "skill_points": 4, "rank": "Débutant"}
    assert reconciler.state is ReconcilerState.IDLE


@pytest.mark.asyncio
async def test_recompute_is_idempotent():
    reconciler, _ = await _reconciler(_four_badges() + [unlocked(USER, "voyage", "niv2")])

    first = reconciler.recompute_aggregate()
    second = reconciler.recompute_aggregate()
    assert first == second
    assert first.skill_total == 9


@pytest.mark.asyncio
async def test_fifth_badge_unlocks_ghost_and_persists_it():
    reconciler, adapter = await _reconciler(_four_badges())
    events = []
    reconciler.subscribe(events.append)

    outcome = await reconciler.apply_answer("b4", "OK")
    await reconciler.wait_until_idle()

    assert outcome.status is AnswerStatus.UNLOCKED
    assert outcome.ok is True
    assert "ghost" in outcome.aggregate.unlocked_badge_ids
    assert outcome.aggregate.skill_total == 6
    assert outcome.aggregate.total_badge_count == 8

    ghost_record = adapter.rows[(USER, "ghost")]
    assert ghost_record.success is True
    assert ghost_record.level is None
    assert ghost_record.was_ever_unlocked is True

    kinds = [(event.kind, event.badge_id) for event in events]
    assert (BadgeEventKind.UNLOCKED, "ghost") in kinds
    assert (BadgeEventKind.UNLOCKED, "b4") in kinds
    ghost_event = next(event for event in events if event.badge_id == "ghost")
    assert ghost_event.message == GHOST_UNLOCKED_MESSAGE
    assert adapter.profile_stats[USER]["badge_count"] == 6


@pytest.mark.asyncio
async def test_write_failure_leaves_state_unchanged():
    reconciler, adapter = await _reconciler(_four_badges())
    before = reconciler.aggregate
    adapter.fail_writes = True

    outcome = await reconciler.apply_answer("b4", "ok")

    assert outcome.status is AnswerStatus.WRITE_FAILED
    assert outcome.message == WRITE_FAILED_MESSAGE
    assert reconciler.aggregate == before
    assert "b4" not in reconciler.records
    assert (USER, "b4") not in adapter.rows


@pytest.mark.asyncio
async def test_invalid_answer_writes_nothing():
    reconciler, adapter = await _reconciler()

    outcome = await reconciler.apply_answer("b0", "   ")
    unknown = await reconciler.apply_answer("nope", "ok")

    assert outcome.status is AnswerStatus.INVALID
    assert unknown.status is AnswerStatus.INVALID
    assert adapter.writes == []


@pytest.mark.asyncio
async def test_denied_answer_writes_level_zero_and_keeps_history():
    previous = UserBadgeRecord(user_id=USER, badge_id="b0", success=False, was_ever_unlocked=True)
    reconciler, adapter = await _reconciler([previous])
    events = []
    reconciler.subscribe(events.append)

    outcome = await reconciler.apply_answer("b0", "faux")

    assert outcome.status is AnswerStatus.DENIED
    assert outcome.ok is False
    record = adapter.rows[(USER, "b0")]
    assert record.success is False
    assert record.level == LEVEL_ZERO
    assert record.was_ever_unlocked is True
    assert events[-1].kind is BadgeEventKind.BLOCKED


@pytest.mark.asyncio
async def test_range_answer_stores_level_and_points():
    reconciler, adapter = await _reconciler()

    outcome = await reconciler.apply_answer("voyage", "15")

    assert outcome.evaluation.level == "niv2"
    assert outcome.evaluation.display_level == "Skill max"
    assert adapter.rows[(USER, "voyage")].level == "niv2"
    assert outcome.aggregate.levels["voyage"] == "niv2"
    assert outcome.aggregate.skill_total == 5


@pytest.mark.asyncio
async def test_low_skill_badge_costs_points():
    reconciler, _ = await _reconciler(_four_badges())

    outcome = await reconciler.apply_answer("fumeur", "oui")

    assert outcome.aggregate.skill_total == 4 - 2
    assert outcome.aggregate.low_skill_unlocked_count == 1


@pytest.mark.asyncio
async def test_remote_change_is_queued_behind_running_answer():
    reconciler, adapter = await _reconciler(_four_badges())
    remote = unlocked(USER, "voyage", "niv1")
    seen_states = []

    async def hook(record):
        if record.badge_id == "b4":
            seen_states.append(reconciler.state)
            reconciler.handle_change(ChangeEvent(ChangeKind.UPDATE, remote))
            # L'événement distant attend la fin de la réponse en cours
            assert reconciler.pending_operations >= 1
            assert "voyage" not in reconciler.records

    adapter.write_hook = hook
    outcome = await reconciler.apply_answer("b4", "ok")

    # La réponse a été entièrement traitée (passe fantôme comprise) avant le merge
    assert "ghost" in outcome.aggregate.unlocked_badge_ids
    assert "voyage" not in outcome.aggregate.unlocked_badge_ids

    await reconciler.wait_until_idle()
    assert seen_states == [ReconcilerState.APPLYING]
    assert reconciler.aggregate.levels["voyage"] == "niv1"
    assert reconciler.state is ReconcilerState.IDLE


@pytest.mark.asyncio
async def test_remote_changes_last_writer_wins():
    reconciler, _ = await _reconciler()

    await reconciler.apply_remote_change(ChangeEvent(ChangeKind.INSERT, unlocked(USER, "voyage", "niv1")))
    aggregate = await reconciler.apply_remote_change(
        ChangeEvent(ChangeKind.UPDATE, unlocked(USER, "voyage", "niv2"))
    )

    assert aggregate.levels["voyage"] == "niv2"
    assert aggregate.skill_total == 5


@pytest.mark.asyncio
async def test_remote_change_for_other_user_is_ignored():
    reconciler, _ = await _reconciler()
    before = reconciler.aggregate

    aggregate = await reconciler.apply_remote_change(ChangeEvent(ChangeKind.INSERT, unlocked("bob", "b0")))

    assert aggregate == before


@pytest.mark.asyncio
async def test_remote_delete_relocks_ghost_and_keeps_history():
    records = [unlocked(USER, f"b{index}") for index in range(5)]
    reconciler, adapter = await _reconciler(records)
    assert "ghost" in reconciler.aggregate.unlocked_badge_ids

    adapter.rows.pop((USER, "b4"))
    aggregate = await reconciler.apply_remote_change(ChangeEvent(ChangeKind.DELETE, records[4]))
    await reconciler.wait_until_idle()

    assert "b4" not in aggregate.unlocked_badge_ids
    assert "ghost" not in aggregate.unlocked_badge_ids
    ghost_record = adapter.rows[(USER, "ghost")]
    assert ghost_record.success is False
    assert ghost_record.was_ever_unlocked is True


@pytest.mark.asyncio
async def test_blocked_record_is_excluded_and_emits_reblocked():
    records = [unlocked(USER, f"b{index}") for index in range(5)]
    reconciler, adapter = await _reconciler(records)
    events = []
    reconciler.subscribe(events.append)

    blocked = unlocked(USER, "b2", blocked_by_suspicion=True)
    aggregate = await reconciler.apply_remote_change(ChangeEvent(ChangeKind.UPDATE, blocked))
    await reconciler.wait_until_idle()

    assert "b2" not in aggregate.unlocked_badge_ids
    assert "ghost" not in reconciler.aggregate.unlocked_badge_ids
    assert [event.kind for event in events if event.badge_id == "b2"] == [BadgeEventKind.REBLOCKED]


@pytest.mark.asyncio
async def test_feed_echo_of_own_writes_is_harmless():
    reconciler, _ = await _reconciler(_four_badges())

    await reconciler.apply_answer("b4", "ok")
    settled = reconciler.aggregate
    await reconciler.wait_until_idle()

    assert reconciler.aggregate == settled
    assert reconciler.pending_operations == 0


@pytest.mark.asyncio
async def test_stop_unsubscribes_from_feed():
    reconciler, adapter = await _reconciler()
    reconciler.stop()

    await adapter.upsert_user_badge(unlocked(USER, "b0"))
    await asyncio.sleep(0)

    assert "b0" not in reconciler.aggregate.unlocked_badge_ids


def test_build_aggregate_ignores_unknown_badges():
    catalog = _catalog()
    aggregate = build_aggregate(catalog, [unlocked(USER, "b0"), unlocked(USER, "retired")])

    assert aggregate.unlocked_badge_ids == frozenset({"b0"})
    assert aggregate.skill_total == 1


@pytest.mark.asyncio
async def test_own_write_echoes_do_not_replay_older_records():
    reconciler, adapter = await _reconciler(_four_badges())
    events = []
    reconciler.subscribe(events.append)

    first, second = await asyncio.gather(
        reconciler.apply_answer("b4", "ok"),
        reconciler.apply_answer("b4", "faux"),
    )
    await reconciler.wait_until_idle()

    assert first.status is AnswerStatus.UNLOCKED
    assert second.status is AnswerStatus.DENIED
    ghost_events = [event for event in events if event.badge_id == "ghost"]
    assert len(ghost_events) == 1
    assert [record.success for record in adapter.writes if record.badge_id == "ghost"] == [True, False]
    assert reconciler.aggregate.unlocked_badge_ids == frozenset({"b0", "b1", "b2", "b3"})
    assert reconciler.pending_operations == 0


@pytest.mark.asyncio
async def test_failed_write_is_not_kept_as_pending_echo():
    reconciler, adapter = await _reconciler(_four_badges())
    adapter.fail_writes = True
    await reconciler.apply_answer("b4", "ok")
    adapter.fail_writes = False

    # Le même enregistrement arrivant d'ailleurs doit être fusionné
    remote = unlocked(USER, "b4", user_answer="ok")
    aggregate = await reconciler.apply_remote_change(ChangeEvent(ChangeKind.INSERT, remote))

    assert "b4" in aggregate.unlocked_badge_ids
