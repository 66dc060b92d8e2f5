import json
from pathlib import Path

import pytest

from app.gamification.errors import WriteError
from app.models.user.badge_model import Badge, UserBadge
from app.models.user.profile_model import Profile
from app.persistence.base import ChangeEvent, ChangeFeed, ChangeKind
from app.persistence.catalog_source import load_catalog, load_local_rows
from app.persistence.local_adapter import LocalBadgeAdapter
from app.persistence.sql_adapter import SQLBadgeAdapter
from tests.utils import create_badges, unlocked


@pytest.fixture(params=["sql", "local"])
def adapter_with_feed(request, tmp_path, session_factory):
    feed = ChangeFeed()
    if request.param == "sql":
        return SQLBadgeAdapter(session_factory, feed=feed), feed
    return LocalBadgeAdapter(tmp_path / "store.json", feed=feed), feed


@pytest.mark.asyncio
async def test_upsert_overwrites_without_duplicates(adapter_with_feed):
    adapter, feed = adapter_with_feed
    events = []
    feed.subscribe("alice", events.append)

    await adapter.upsert_user_badge(unlocked("alice", "voyage", "niv1"))
    await adapter.upsert_user_badge(unlocked("alice", "voyage", "niv2", user_answer="15"))

    records = await adapter.read_user_badges("alice")
    assert len(records) == 1
    assert records[0].level == "niv2"
    assert records[0].user_answer == "15"
    assert [event.kind for event in events] == [ChangeKind.INSERT, ChangeKind.UPDATE]


@pytest.mark.asyncio
async def test_records_are_scoped_per_user(adapter_with_feed):
    adapter, feed = adapter_with_feed
    bob_events = []
    feed.subscribe("bob", bob_events.append)

    await adapter.upsert_user_badge(unlocked("alice", "voyage"))

    assert await adapter.read_user_badges("bob") == []
    assert bob_events == []


@pytest.mark.asyncio
async def test_delete_publishes_removed_record(adapter_with_feed):
    adapter, feed = adapter_with_feed
    events = []
    feed.subscribe("alice", events.append)

    await adapter.upsert_user_badge(unlocked("alice", "permis", blocked_by_suspicion=True))
    await adapter.delete_user_badge("alice", "permis")
    await adapter.delete_user_badge("alice", "permis")

    assert await adapter.read_user_badges("alice") == []
    assert [event.kind for event in events] == [ChangeKind.INSERT, ChangeKind.DELETE]
    assert events[-1].record.blocked_by_suspicion is True


@pytest.mark.asyncio
async def test_record_fields_survive_a_round_trip(adapter_with_feed):
    adapter, _ = adapter_with_feed
    record = unlocked("alice", "sportif", "niv1", user_answer="course,velo", blocked_by_suspicion=True)

    await adapter.upsert_user_badge(record)

    assert await adapter.read_user_badges("alice") == [record]


@pytest.mark.asyncio
async def test_sql_profile_stats_are_upserted(session_factory, db_session):
    adapter = SQLBadgeAdapter(session_factory)

    await adapter.save_profile_stats("alice", badge_count=3, skill_points=12, rank="Débutant")
    await adapter.save_profile_stats("alice", badge_count=4, skill_points=16, rank="Polyvalent")

    profile = db_session.get(Profile, "alice")
    assert (profile.badge_count, profile.skill_points, profile.rank) == (4, 16, "Polyvalent")


@pytest.mark.asyncio
async def test_local_profile_stats_are_saved(tmp_path):
    adapter = LocalBadgeAdapter(tmp_path / "store.json")

    await adapter.save_profile_stats("alice", badge_count=2, skill_points=5, rank="Débutant")

    assert adapter.read_profile_stats("alice") == {"badge_count": 2, "skill_points": 5, "rank": "Débutant"}
    assert adapter.read_profile_stats("bob") is None


@pytest.mark.asyncio
async def test_local_store_uses_namespaced_keys(tmp_path):
    path = tmp_path / "store.json"
    adapter = LocalBadgeAdapter(path)

    await adapter.upsert_user_badge(unlocked("alice", "permis"))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert list(data) == ["localUserBadges:alice"]
    assert data["localUserBadges:alice"]["permis"]["success"] is True


@pytest.mark.asyncio
async def test_sql_errors_become_write_errors(engine, session_factory):
    adapter = SQLBadgeAdapter(session_factory)
    UserBadge.__table__.drop(engine)

    with pytest.raises(WriteError):
        await adapter.read_user_badges("alice")
    with pytest.raises(WriteError) as excinfo:
        await adapter.upsert_user_badge(unlocked("alice", "permis"))
    assert excinfo.value.badge_id == "permis"


@pytest.mark.asyncio
async def test_unreadable_local_store_raises_write_error(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{pas du json", encoding="utf-8")
    adapter = LocalBadgeAdapter(path)
    feed_events = []
    adapter.on_change("alice", feed_events.append)

    with pytest.raises(WriteError):
        await adapter.read_user_badges("alice")
    with pytest.raises(WriteError):
        await adapter.upsert_user_badge(unlocked("alice", "permis"))
    assert feed_events == []


@pytest.mark.asyncio
async def test_local_store_in_a_directory_cannot_be_written(tmp_path):
    adapter = LocalBadgeAdapter(tmp_path)

    with pytest.raises(WriteError):
        await adapter.upsert_user_badge(unlocked("alice", "permis"))


def test_failing_subscriber_does_not_break_fan_out():
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    feed.subscribe("alice", broken)
    unsubscribe = feed.subscribe("alice", received.append)

    feed.publish(ChangeEvent(ChangeKind.UPDATE, unlocked("alice", "permis")))
    assert len(received) == 1

    unsubscribe()
    assert feed.subscriber_count("alice") == 1


def test_load_local_rows_tolerates_missing_or_invalid_files(tmp_path):
    assert load_local_rows(tmp_path / "absent.json") == []

    not_a_list = tmp_path / "object.json"
    not_a_list.write_text('{"id": "x"}', encoding="utf-8")
    assert load_local_rows(not_a_list) == []

    rows = tmp_path / "rows.json"
    rows.write_text(json.dumps([{"id": "permis", "name": "Permis"}, "ignored"]), encoding="utf-8")
    assert load_local_rows(rows) == [{"id": "permis", "name": "Permis"}]


def test_load_catalog_reads_badges_table(db_session):
    create_badges(db_session, [{"id": "permis", "name": "Permis", "answer": '{"type":"boolean"}'}])

    catalog = load_catalog(db_session)

    assert [badge.id for badge in catalog] == ["permis"]


def test_load_catalog_falls_back_to_local_file(engine, db_session, tmp_path):
    local = tmp_path / "badges.json"
    local.write_text(json.dumps([{"id": "capitale", "name": "Capitale", "answer": "Canberra"}]), encoding="utf-8")
    Badge.__table__.drop(engine)

    catalog = load_catalog(db_session, local_path=local)

    assert "capitale" in catalog


def test_bundled_badges_file_is_a_valid_catalog():
    bundled = Path(__file__).resolve().parents[1] / "app" / "data" / "badges.json"
    catalog = load_catalog(None, local_path=bundled)

    assert "touche-a-tout" in catalog
    assert catalog.get("touche-a-tout").is_ghost
    assert catalog.get("fumeur").low_skill is True
