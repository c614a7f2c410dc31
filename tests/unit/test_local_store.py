# =============================================================================
# tests/unit/test_local_store.py
# Unit Tests for LocalDurableStore
# =============================================================================

import pytest


class TestCachedEntities:
    """Test the TTL cache"""

    def test_cache_and_read_back(self, store):
        """Fresh data is returned as stored"""
        store.cache_data("students", [{"id": 1, "name": "Awa"}])

        assert store.get_cached_data("students") == [{"id": 1, "name": "Awa"}]

    def test_missing_key_returns_none(self, store):
        """Unknown types never raise"""
        assert store.get_cached_data("nothing-here") is None
        assert store.get_cached_entity("nothing-here") is None

    def test_expired_data_returns_none(self, store, clock):
        """Data past its TTL is hidden unless stale reads are allowed"""
        store.cache_data("classes", ["6e A"], ttl_minutes=60)
        clock.advance(minutes=61)

        assert store.get_cached_data("classes") is None
        stale = store.get_cached_entity("classes", allow_stale=True)
        assert stale is not None
        assert stale.data == ["6e A"]

    def test_overwrite_last_write_wins(self, store, clock):
        """Caching the same type twice keeps the second value"""
        store.cache_data("teachers", [1])
        clock.advance(minutes=5)
        entity = store.cache_data("teachers", [2])

        cached = store.get_cached_entity("teachers")
        assert cached.data == [2]
        assert cached.fetched_at == entity.fetched_at

    def test_clean_expired_cache(self, store, clock):
        """Only expired rows are removed"""
        store.cache_data("short", 1, ttl_minutes=10)
        store.cache_data("long", 2, ttl_minutes=120)
        clock.advance(minutes=30)

        assert store.clean_expired_cache() == 1
        assert store.get_cached_entity("short", allow_stale=True) is None
        assert store.get_cached_data("long") == 2

    def test_user_scoped_helpers_use_their_ttl(self, store, clock):
        """Dashboard data expires after 30 minutes, the profile after 120"""
        store.cache_user_profile(7, {"name": "Moussa"})
        store.cache_dashboard_data(7, "teacher", {"classes": 3})
        clock.advance(minutes=31)

        assert store.get_cached_dashboard_data(7, "teacher") is None
        assert store.get_cached_user_profile(7) == {"name": "Moussa"}

    def test_unserializable_data_raises_persistence_error(self, store):
        """Values json cannot encode surface as PersistenceError"""
        from educafric_core.errors import PersistenceError

        with pytest.raises(PersistenceError):
            store.cache_data("bad", {("tuple", "key"): 1})


class TestApplyToCache:
    """Test optimistic updates and reconciliation of cached collections"""

    def test_optimistic_create_adds_placeholder(self, store):
        """An optimistic create is tagged with the pending action id"""
        from educafric_core.offline.local_store import PENDING_MARKER
        from educafric_core.offline.models import Operation

        store.cache_data("attendance", [])
        changed = store.apply_to_cache(
            "attendance", Operation.CREATE, {"studentId": 4},
            pending_action_id=11, optimistic=True,
        )

        assert changed
        assert store.get_cached_data("attendance") == [{"studentId": 4, PENDING_MARKER: 11}]

    def test_server_create_replaces_placeholder(self, store):
        """Reconciling a create swaps the placeholder for the server record"""
        from educafric_core.offline.models import Operation

        store.cache_data("attendance", [])
        store.apply_to_cache("attendance", Operation.CREATE, {"studentId": 4},
                             pending_action_id=11, optimistic=True)
        store.apply_to_cache("attendance", Operation.CREATE, {"id": 900, "studentId": 4},
                             pending_action_id=11)

        assert store.get_cached_data("attendance") == [{"id": 900, "studentId": 4}]

    def test_update_merges_by_id(self, store):
        """Optimistic updates merge fields into the matching record"""
        from educafric_core.offline.models import Operation

        store.cache_data("grades", [{"id": 1, "score": 10, "subject": "Maths"}])
        store.apply_to_cache("grades", Operation.UPDATE, {"id": 1, "score": 14}, optimistic=True)

        assert store.get_cached_data("grades") == [{"id": 1, "score": 14, "subject": "Maths"}]

    def test_delete_removes_record(self, store):
        """Deletes drop the matching record"""
        from educafric_core.offline.models import Operation

        store.cache_data("students", [{"id": 1}, {"id": 2}])
        store.apply_to_cache("students", Operation.DELETE, {"id": "1"}, optimistic=True)

        assert store.get_cached_data("students") == [{"id": 2}]

    def test_uncached_collection_is_untouched(self, store):
        """Nothing is invented for collections that were never cached"""
        from educafric_core.offline.models import Operation

        assert not store.apply_to_cache("homework", Operation.CREATE, {"id": 1}, optimistic=True)
        assert store.get_cached_data("homework") is None

    def test_keeps_ttl(self, store, clock):
        """Applying a change does not extend the freshness window"""
        from educafric_core.offline.models import Operation

        store.cache_data("grades", [], ttl_minutes=10)
        clock.advance(minutes=9)
        store.apply_to_cache("grades", Operation.CREATE, {"id": 3})
        clock.advance(minutes=2)

        assert store.get_cached_data("grades") is None


class TestActionLog:
    """Test the persisted action log"""

    def test_ids_are_monotonic_and_fifo(self, store):
        """Actions come back in insertion order"""
        from educafric_core.offline.models import EntityType, Operation

        first = store.queue_action(EntityType.ATTENDANCE, Operation.CREATE, {"a": 1})
        second = store.queue_action(EntityType.GRADE, Operation.UPDATE, {"b": 2}, entity_id="9")

        assert second.id > first.id
        pending = store.list_pending_actions()
        assert [a.id for a in pending] == [first.id, second.id]
        assert pending[1].entity_id == "9"
        assert pending[0].synced is False
        assert pending[0].attempt_count == 0

    def test_mark_synced_is_idempotent(self, store):
        """A second mark_synced (or an unknown id) is a no-op"""
        from educafric_core.offline.models import EntityType, Operation

        action = store.queue_action(EntityType.HOMEWORK, Operation.CREATE, {})

        assert store.mark_synced(action.id) is True
        assert store.mark_synced(action.id) is False
        assert store.mark_synced(12345) is False
        assert store.pending_count() == 0

    def test_record_failure_counts_attempts(self, store):
        """Each failure increments attempt_count and keeps the last error"""
        from educafric_core.offline.models import EntityType, Operation

        action = store.queue_action(EntityType.MESSAGE, Operation.CREATE, {})
        store.record_failure(action.id, "timeout")
        count = store.record_failure(action.id, "502")

        assert count == 2
        stored = store.get_action(action.id)
        assert stored.attempt_count == 2
        assert stored.last_error == "502"

    def test_actions_survive_reopen(self, tmp_path, clock):
        """The queue is durable across store instances"""
        from educafric_core.offline.local_store import LocalDurableStore
        from educafric_core.offline.models import EntityType, Operation

        first = LocalDurableStore.for_user(5, data_dir=tmp_path, clock=clock)
        first.queue_action(EntityType.ATTENDANCE, Operation.CREATE, {"id": "A"})
        first.close()

        reopened = LocalDurableStore.for_user(5, data_dir=tmp_path, clock=clock)
        try:
            assert [a.payload for a in reopened.list_pending_actions()] == [{"id": "A"}]
            assert (tmp_path / "user_5" / "educafric_offline.db").exists()
        finally:
            reopened.close()

    def test_move_to_failed(self, store):
        """Failed actions leave the pending table and keep their details"""
        from educafric_core.offline.models import EntityType, FailureReason, Operation

        action = store.queue_action(EntityType.GRADE, Operation.UPDATE, {"id": 3}, entity_id="3")
        store.move_to_failed(action.id, FailureReason.CONFLICT, error="Rejected", status_code=409)

        assert store.pending_count() == 0
        failed = store.list_failed_actions(FailureReason.CONFLICT)
        assert len(failed) == 1
        assert failed[0].id == action.id
        assert failed[0].status_code == 409
        assert failed[0].action.last_error == "Rejected"
        assert store.failed_count(FailureReason.DEAD_LETTER) == 0

        assert store.discard_failed(action.id)
        assert store.failed_count() == 0

    def test_write_failure_surfaces_as_persistence_error(self, store):
        """SQLite errors inside a transaction become PersistenceError"""
        from educafric_core.errors import PersistenceError

        with pytest.raises(PersistenceError):
            with store.transaction() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")


class TestMetaAndFrames:
    """Test metadata and DataFrame views"""

    def test_meta_roundtrip_datetime(self, store, clock):
        """Timestamps are stored as ISO strings"""
        store.set_meta_datetime("last_server_sync_at", clock())

        assert store.get_meta_datetime("last_server_sync_at") == clock()
        assert store.get_meta_datetime("missing") is None
        assert store.get_meta("missing", "default") == "default"

    def test_pending_frame_columns(self, store):
        """The panel DataFrame has one row per pending action"""
        from educafric_core.offline.models import EntityType, Operation

        store.queue_action(EntityType.ATTENDANCE, Operation.CREATE, {"x": 1})
        frame = store.pending_frame()

        assert len(frame) == 1
        assert frame.loc[0, "entity_type"] == "attendance"
        assert "payload" in frame.columns

    def test_failed_frame_empty(self, store):
        """An empty failed table still yields the expected columns"""
        frame = store.failed_frame()

        assert frame.empty
        assert "reason" in frame.columns
        assert "synced" not in frame.columns

    def test_clear_all(self, store):
        """clear_all empties every table"""
        from educafric_core.offline.models import EntityType, Operation

        store.queue_action(EntityType.ATTENDANCE, Operation.CREATE, {})
        store.cache_data("students", [])
        store.set_meta("offline_enabled", True)
        store.clear_all()

        assert store.pending_count() == 0
        assert store.get_cached_data("students") is None
        assert store.get_meta("offline_enabled") is None

    def test_record_failure_on_removed_action(self, store):
        """Failures reported for synced or unknown actions change nothing"""
        from educafric_core.offline.models import EntityType, Operation

        action = store.queue_action(EntityType.GRADE, Operation.CREATE, {})
        store.mark_synced(action.id)

        assert store.record_failure(action.id, "late error") is None
        assert store.record_failure(999, "unknown") is None


class TestRequeueActions:
    """Test moving actions back to the tail of the log"""

    def test_requeue_actions_moves_rows_to_tail(self, store):
        """Failed and pending rows come back as new pending actions, in order"""
        from educafric_core.offline.models import EntityType, FailureReason, Operation

        create = store.queue_action(EntityType.GRADE, Operation.CREATE, {"id": "A"}, entity_id="A")
        other = store.queue_action(EntityType.GRADE, Operation.CREATE, {"id": "B"}, entity_id="B")
        update = store.queue_action(EntityType.GRADE, Operation.UPDATE, {"id": "A"}, entity_id="A")
        store.record_failure(create.id, "bad request")
        store.move_to_failed(create.id, FailureReason.CONFLICT, status_code=400)

        requeued = store.requeue_actions([update.id, create.id])

        assert list(requeued) == [create.id, update.id]
        assert requeued[create.id].attempt_count == 0
        assert store.failed_count() == 0
        assert [a.id for a in store.list_pending_actions()] == [
            other.id,
            requeued[create.id].id,
            requeued[update.id].id,
        ]

    def test_requeue_actions_skips_unknown_ids(self, store):
        assert store.requeue_actions([12345]) == {}
        assert store.pending_count() == 0


class TestConnections:
    """Test per-thread connection lifecycle"""

    def test_release_connection_reopens_lazily(self, store):
        """The calling thread gets a fresh connection on next use"""
        store.pending_count()
        before = len(store._connections)

        store.release_connection()
        assert len(store._connections) == before - 1

        assert store.pending_count() == 0
        assert len(store._connections) == before

    def test_worker_threads_do_not_accumulate_connections(self, store):
        """Timer threads close their connection when their callback ends"""
        from educafric_core.offline.backoff import TimerSet

        store.pending_count()
        before = len(store._connections)
        timers = TimerSet(on_done=store.release_connection)

        for _ in range(10):
            timer = timers.schedule(0, store.pending_count)
            timer.join(timeout=5)

        assert len(store._connections) == before
