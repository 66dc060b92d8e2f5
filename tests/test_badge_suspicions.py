import pytest

from app.crud import badge_crud
from app.persistence.base import ChangeFeed, ChangeKind
from app.services.suspicion_service import SuspicionError, SuspicionService
from tests.utils import create_badges, create_user_badge


@pytest.fixture()
def owned_badge(db_session):
    create_badges(db_session, [{"id": "permis", "name": "Permis", "answer": '{"type":"boolean"}'}])
    return create_user_badge(db_session, "alice", "permis")


def _suspect(db_session, suspect_id, feed=None, threshold=2):
    return SuspicionService(db_session, suspect_id, feed=feed, threshold=threshold).suspect_badge("alice", "permis")


def test_badge_is_blocked_at_threshold_and_feed_notified(db_session, owned_badge):
    feed = ChangeFeed()
    events = []
    feed.subscribe("alice", events.append)

    first = _suspect(db_session, "bob", feed)
    assert first == {"blocked": False, "suspicion_count": 1}
    assert events == []

    second = _suspect(db_session, "carol", feed)
    assert second == {"blocked": True, "suspicion_count": 2}

    assert len(events) == 1
    assert events[0].kind is ChangeKind.UPDATE
    assert events[0].record.blocked_by_suspicion is True
    assert events[0].record.success is True

    row = badge_crud.get_user_badge(db_session, "alice", "permis")
    assert row.is_blocked_by_suspicions is True


def test_removing_suspicion_below_threshold_unblocks(db_session, owned_badge):
    feed = ChangeFeed()
    _suspect(db_session, "bob", feed)
    _suspect(db_session, "carol", feed)
    events = []
    feed.subscribe("alice", events.append)

    service = SuspicionService(db_session, "carol", feed=feed, threshold=2)
    result = service.remove_suspicion("alice", "permis")

    assert result == {"blocked": False, "suspicion_count": 1}
    assert events[0].record.blocked_by_suspicion is False
    assert service.has_suspected("alice", "permis") is False


def test_cannot_suspect_own_badge(db_session, owned_badge):
    with pytest.raises(SuspicionError) as excinfo:
        SuspicionService(db_session, "alice").suspect_badge("alice", "permis")
    assert excinfo.value.code == "cannot_suspect_own_badge"
    assert excinfo.value.status_code == 403


def test_cannot_suspect_locked_badge(db_session, owned_badge):
    owned_badge.success = False
    db_session.commit()

    with pytest.raises(SuspicionError) as excinfo:
        _suspect(db_session, "bob")
    assert excinfo.value.code == "badge_not_unlocked"
    assert excinfo.value.status_code == 404


def test_duplicate_suspicion_is_rejected(db_session, owned_badge):
    _suspect(db_session, "bob")

    with pytest.raises(SuspicionError) as excinfo:
        _suspect(db_session, "bob")
    assert excinfo.value.code == "already_suspected"
    assert excinfo.value.status_code == 409
    assert badge_crud.count_suspicions(db_session, "alice", "permis") == 1


def test_removing_unknown_suspicion_fails(db_session, owned_badge):
    with pytest.raises(SuspicionError) as excinfo:
        SuspicionService(db_session, "bob").remove_suspicion("alice", "permis")
    assert excinfo.value.code == "suspicion_not_found"
