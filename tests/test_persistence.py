"""
Unit tests for SessionPersistence (document storage and compare-and-set)
"""

import json
import threading
from dataclasses import replace

import pytest

from coachflow.contracts import GenerationLock, Session, Slot
from coachflow.persistence import LockConflictError, PersistenceError, SessionPersistence
from coachflow.utils.statuses import LockStatus, SlotStatus


def make_session(session_id="test_conv1_1000", user_id="user_1", **overrides):
    params = dict(
        user_id=user_id,
        session_id=session_id,
        domain="test_domain",
        conversation_id="conv1",
        started_at="2025-01-01T00:00:00+00:00",
    )
    params.update(overrides)
    return Session(**params)


class TestSaveLoad:

    def test_round_trip(self, persistence):
        session = make_session(turn_count=3)
        path = persistence.save(session)

        assert path.endswith("user_1/test_conv1_1000.json")
        assert persistence.load("user_1", "test_conv1_1000") == session

    def test_missing_document_is_none(self, persistence):
        assert persistence.load("user_1", "nope") is None
        assert not persistence.session_exists("user_1", "nope")

    def test_document_is_readable_json(self, persistence):
        path = persistence.save(make_session())
        with open(path) as f:
            data = json.load(f)
        assert data['session_id'] == "test_conv1_1000"
        assert data['generation_lock']['status'] == "NOT_STARTED"

    def test_no_temp_files_left_behind(self, persistence, tmp_path):
        persistence.save(make_session())
        persistence.save(make_session(turn_count=2))
        leftovers = list((tmp_path / "sessions" / "user_1").glob("*.tmp"))
        assert leftovers == []

    @pytest.mark.parametrize("bad_id", ["../escape", "a/b", "", "spaces here"])
    def test_unsafe_ids_rejected(self, persistence, bad_id):
        with pytest.raises(ValueError, match="unsupported characters"):
            persistence.load(bad_id, "session")
        with pytest.raises(ValueError):
            persistence.save(make_session(session_id=bad_id or "x", user_id=bad_id))

    def test_corrupt_document_raises_persistence_error(self, persistence, tmp_path):
        user_dir = tmp_path / "sessions" / "user_1"
        user_dir.mkdir(parents=True)
        (user_dir / "broken.json").write_text("{not json")

        with pytest.raises(PersistenceError) as exc_info:
            persistence.load("user_1", "broken")
        assert exc_info.value.retryable is True

    def test_unserializable_value_raises_persistence_error(self, persistence):
        session = make_session(slots={'exercise': Slot(SlotStatus.COMPLETE, object())})

        with pytest.raises(PersistenceError):
            persistence.save(session)


class TestFindSessions:

    def test_filters_and_order(self, persistence):
        persistence.save(make_session("s_b", started_at="2025-01-02T00:00:00+00:00"))
        persistence.save(make_session("s_a", started_at="2025-01-01T00:00:00+00:00"))
        persistence.save(make_session("s_other", conversation_id="conv2"))
        persistence.save(make_session("s_deleted", is_deleted=True))
        persistence.save(make_session("s_domain", domain="coach_creator"))

        found = persistence.find_sessions("user_1", conversation_id="conv1", domain="test_domain")

        assert [s.session_id for s in found] == ["s_a", "s_b"]

    def test_include_deleted(self, persistence):
        persistence.save(make_session("s_deleted", is_deleted=True))
        assert persistence.find_sessions("user_1") == []
        assert len(persistence.find_sessions("user_1", include_deleted=True)) == 1

    def test_unknown_user(self, persistence):
        assert persistence.find_sessions("ghost") == []


class TestCompareAndSet:

    def test_missing_document_counts_as_not_started(self, persistence):
        persistence.save(make_session(), expected_lock_status={LockStatus.NOT_STARTED})

    def test_conflict_when_lock_moved(self, persistence):
        session = make_session()
        persistence.save(replace(session, generation_lock=GenerationLock(LockStatus.IN_PROGRESS)))

        with pytest.raises(LockConflictError) as exc_info:
            persistence.save(session, expected_lock_status={LockStatus.NOT_STARTED})

        assert exc_info.value.actual == LockStatus.IN_PROGRESS
        assert persistence.load("user_1", session.session_id).generation_lock.status == \
            LockStatus.IN_PROGRESS

    def test_conflict_when_already_complete(self, persistence):
        """A collection write cannot reopen a session stored as complete"""
        session = make_session()
        persistence.save(replace(session, is_complete=True))

        with pytest.raises(LockConflictError, match="is_complete=True"):
            persistence.save(session, expected_is_complete=False)

        assert persistence.load("user_1", session.session_id).is_complete

    def test_incomplete_guard_passes_for_new_document(self, persistence):
        session = make_session()
        persistence.save(session, expected_lock_status={LockStatus.NOT_STARTED}, expected_is_complete=False)
        assert persistence.session_exists("user_1", session.session_id)

    def test_concurrent_acquire_single_winner(self, persistence):
        """Only one of many racing writers moves NOT_STARTED -> IN_PROGRESS"""
        session = make_session()
        persistence.save(session)
        locked = replace(session, generation_lock=GenerationLock(LockStatus.IN_PROGRESS))

        winners, conflicts = [], []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                persistence.save(locked, expected_lock_status={LockStatus.NOT_STARTED})
                winners.append(1)
            except LockConflictError:
                conflicts.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(conflicts) == 7


def test_base_dir_created(tmp_path):
    SessionPersistence(base_dir=str(tmp_path / "a" / "b"))
    assert (tmp_path / "a" / "b").is_dir()
