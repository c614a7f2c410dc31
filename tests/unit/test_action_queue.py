# =============================================================================
# tests/unit/test_action_queue.py
# Unit Tests for ActionQueue
# =============================================================================

import pytest

from educafric_core.errors import PermanentSyncError, TransientSyncError


class TestEnqueue:
    """Test validation and persistence on enqueue"""

    def test_enqueue_returns_id_and_persists(self, queue, store):
        """Enqueued actions are pending with a zero attempt count"""
        action_id = queue.enqueue("attendance", "create", {"id": "A", "status": "present"}, user_id=7)

        action = store.get_action(action_id)
        assert action.entity_id == "A"
        assert action.user_id == 7
        assert action.attempt_count == 0
        assert queue.size == 1

    def test_explicit_entity_id_wins(self, queue, store):
        """The entity_id argument overrides payload["id"]"""
        action_id = queue.enqueue("grade", "update", {"id": 1, "score": 12}, entity_id=99)

        assert store.get_action(action_id).entity_id == "99"

    def test_unknown_entity_type_rejected(self, queue):
        """Unknown types raise ActionValidationError and queue nothing"""
        from educafric_core.errors import ActionValidationError

        with pytest.raises(ActionValidationError) as exc_info:
            queue.enqueue("timetable", "create", {})

        assert exc_info.value.code == "QUEUE_001"
        assert queue.size == 0

    def test_non_dict_payload_rejected(self, queue):
        """Payloads must be JSON objects"""
        from educafric_core.errors import ActionValidationError

        with pytest.raises(ActionValidationError):
            queue.enqueue("homework", "create", ["not", "a", "dict"])

    def test_enqueue_applies_optimistic_update(self, queue, store):
        """Cached collections reflect the change immediately"""
        store.cache_data("grades", [{"id": 1, "score": 10}])

        queue.enqueue("grade", "update", {"id": 1, "score": 16})

        assert store.get_cached_data("grades") == [{"id": 1, "score": 16}]


class TestDrainOrdering:
    """Test FIFO and per-entity ordering during a drain"""

    def test_drain_sends_in_fifo_order(self, queue, sender):
        """Every action is sent once, in enqueue order"""
        ids = [
            queue.enqueue("attendance", "create", {"id": "A"}),
            queue.enqueue("grade", "create", {"id": "G"}),
            queue.enqueue("attendance", "update", {"id": "A", "status": "late"}),
        ]

        report = queue.drain(sender)

        assert sender.sent_ids == ids
        assert report.complete
        assert len(report.synced) == 3
        assert queue.size == 0

    def test_synced_actions_are_not_resent(self, queue, sender):
        """Once acknowledged, an action is never sent again"""
        queue.enqueue("attendance", "create", {"id": "A"})

        queue.drain(sender)
        second = queue.drain(sender)

        assert len(sender.sent) == 1
        assert second.synced == []

    def test_drain_empty_queue(self, queue, sender):
        """An empty drain is complete and sends nothing"""
        report = queue.drain(sender)

        assert report.complete
        assert sender.sent == []

    def test_transient_failure_holds_later_actions_of_same_entity(self, queue, make_sender):
        """A 5xx on one entity must not let its later actions overtake it"""
        sender = make_sender({"A": [TransientSyncError("502", status_code=502)]})
        first = queue.enqueue("attendance", "create", {"id": "A"})
        second = queue.enqueue("attendance", "update", {"id": "A", "status": "late"})
        other = queue.enqueue("grade", "create", {"id": "G"})

        report = queue.drain(sender)

        assert sender.sent_ids == [first, other]
        assert [a.id for a in report.transient_failures] == [first]
        assert [a.id for a in report.held] == [second]
        assert not report.complete
        assert queue.size == 2

        retry = queue.drain(sender)

        assert sender.sent_ids == [first, other, first, second]
        assert retry.complete

    def test_generic_exception_counts_as_transient(self, queue, make_sender):
        """Unexpected exceptions from the sender are retried, not lost"""
        sender = make_sender({"A": [RuntimeError("socket closed")]})
        action_id = queue.enqueue("message", "create", {"id": "A"})

        report = queue.drain(sender)

        assert [a.id for a in report.transient_failures] == [action_id]
        assert report.transient_failures[0].attempt_count == 1
        assert report.transient_failures[0].last_error == "socket closed"


class TestDrainFailures:
    """Test conflicts and dead letters"""

    def test_permanent_failure_becomes_conflict_and_cascades(self, queue, store, make_sender):
        """A 4xx parks the action and every later action of that entity"""
        from educafric_core.offline.models import FailureReason

        sender = make_sender({"A": [PermanentSyncError("Invalid", status_code=422)]})
        create = queue.enqueue("attendance", "create", {"id": "A"})
        update = queue.enqueue("attendance", "update", {"id": "A", "status": "late"})

        report = queue.drain(sender)

        assert sender.sent_ids == [create]
        assert [a.id for a in report.conflicts] == [create, update]
        conflicts = store.list_failed_actions(FailureReason.CONFLICT)
        assert [f.id for f in conflicts] == [create, update]
        assert conflicts[0].status_code == 422
        assert queue.size == 0

    def test_later_action_on_conflicted_entity_is_parked_next_pass(self, queue, store, make_sender):
        """New actions for an entity with an unresolved conflict are not sent"""
        sender = make_sender({"A": [PermanentSyncError("Invalid", status_code=409)]})
        queue.enqueue("grade", "update", {"id": "A"})
        queue.drain(sender)

        late = queue.enqueue("grade", "update", {"id": "A", "score": 3})
        report = queue.drain(sender)

        assert [a.id for a in report.conflicts] == [late]
        assert len(sender.sent) == 1

    def test_dead_letter_after_max_attempts(self, queue, store, make_sender):
        """Transient failures stop being retried after max_attempts"""
        from educafric_core.offline.models import FailureReason

        failures = [TransientSyncError("503", status_code=503) for _ in range(3)]
        sender = make_sender({"A": failures})
        action_id = queue.enqueue("homework", "create", {"id": "A"})

        queue.drain(sender, max_attempts=3)
        queue.drain(sender, max_attempts=3)
        report = queue.drain(sender, max_attempts=3)

        assert [a.id for a in report.dead_letters] == [action_id]
        assert report.dead_letters[0].attempt_count == 3
        assert store.failed_count(FailureReason.DEAD_LETTER) == 1
        assert queue.size == 0

    def test_dead_letter_holds_entity_until_resolved(self, queue, store, make_sender):
        """Later actions wait behind a dead letter and resume once it is discarded"""
        sender = make_sender({"A": [TransientSyncError("503")]})
        dead = queue.enqueue("homework", "create", {"id": "A"})
        queue.drain(sender, max_attempts=1)

        follow_up = queue.enqueue("homework", "update", {"id": "A", "title": "Ex. 4"})
        held = queue.drain(sender, max_attempts=1)
        assert [a.id for a in held.held] == [follow_up]

        store.discard_failed(dead)
        released = queue.drain(sender, max_attempts=1)

        assert [a.id for a, _ in released.synced] == [follow_up]

    def test_attempt_count_is_monotonic(self, queue, store, make_sender):
        """attempt_count only grows across drains"""
        sender = make_sender({"A": [TransientSyncError("x"), TransientSyncError("y")]})
        action_id = queue.enqueue("message", "create", {"id": "A"})

        counts = []
        for _ in range(2):
            queue.drain(sender)
            counts.append(store.get_action(action_id).attempt_count)

        assert counts == [1, 2]

    def test_vanished_action_still_holds_its_entity(self, queue, store):
        """A failure on an action that left the log mid-send keeps later ones waiting"""
        sent = []

        def send(action):
            sent.append(action.id)
            if len(sent) == 1:
                store.mark_synced(action.id)
                raise TransientSyncError("read timeout")
            return {}

        first = queue.enqueue("attendance", "create", {"id": "A"})
        second = queue.enqueue("attendance", "update", {"id": "A", "status": "late"})

        report = queue.drain(send)

        assert sent == [first]
        assert [a.id for a in report.held] == [second]
        assert not report.complete


class TestRequeueFailed:
    """Test re-queueing a failed record for another attempt"""

    def test_cascaded_conflict_is_requeued_in_order(self, queue, store, make_sender):
        """Retrying the create brings its cascaded update back behind it"""
        sender = make_sender({"A": [PermanentSyncError("Unknown student", status_code=400)]})
        create = queue.enqueue("attendance", "create", {"id": "A", "status": "present"})
        update = queue.enqueue("attendance", "update", {"id": "A", "status": "late"})
        queue.drain(sender)

        new_ids = queue.requeue_failed(create)

        assert len(new_ids) == 2
        assert min(new_ids) > update
        assert store.failed_count() == 0
        assert [(a.operation.value, a.attempt_count) for a in store.list_pending_actions()] == [
            ("create", 0),
            ("update", 0),
        ]

        report = queue.drain(sender)

        assert [a.operation.value for a, _ in report.synced] == ["create", "update"]
        assert report.conflicts == []
        assert queue.size == 0

    def test_retrying_the_update_also_brings_back_the_create(self, queue, store, make_sender):
        """The record restarts from its first change whichever row is retried"""
        sender = make_sender({"A": [PermanentSyncError("Invalid", status_code=422)]})
        queue.enqueue("grade", "create", {"id": "A", "score": 11})
        update = queue.enqueue("grade", "update", {"id": "A", "score": 14})
        queue.drain(sender)

        queue.requeue_failed(update)
        report = queue.drain(sender)

        assert [a.operation.value for a in sender.sent] == ["create", "create", "update"]
        assert [a.operation.value for a, _ in report.synced] == ["create", "update"]

    def test_waiting_actions_move_behind_the_retried_ones(self, queue, store, make_sender):
        """Actions queued after the conflict keep their place after it"""
        sender = make_sender({"A": [PermanentSyncError("Invalid", status_code=409)]})
        create = queue.enqueue("homework", "create", {"id": "A", "title": "Ex. 1"})
        queue.drain(sender)
        queue.enqueue("homework", "update", {"id": "A", "title": "Ex. 2"})

        queue.requeue_failed(create)
        report = queue.drain(sender)

        assert [a.operation.value for a, _ in report.synced] == ["create", "update"]

    def test_other_entities_are_left_alone(self, queue, store, make_sender):
        """Only failed actions of the same record are re-queued"""
        from educafric_core.offline.models import FailureReason

        sender = make_sender({
            "A": [PermanentSyncError("Invalid", status_code=422)],
            "B": [PermanentSyncError("Invalid", status_code=422)],
        })
        a = queue.enqueue("grade", "create", {"id": "A"})
        b = queue.enqueue("grade", "create", {"id": "B"})
        queue.drain(sender)

        queue.requeue_failed(a)

        assert [f.id for f in store.list_failed_actions(FailureReason.CONFLICT)] == [b]
        assert queue.size == 1

    def test_unknown_id_requeues_nothing(self, queue):
        assert queue.requeue_failed(404) == []
        assert queue.size == 0

    def test_rejected_create_reappears_in_cache(self, queue, store, make_sender):
        """The optimistic record comes back while the retry is pending"""
        from educafric_core.offline.models import Operation

        store.cache_data("attendance", [])
        sender = make_sender({"A": [PermanentSyncError("Invalid", status_code=400)]})
        create = queue.enqueue("attendance", "create", {"id": "A", "status": "present"})
        queue.drain(sender)
        store.apply_to_cache("attendance", Operation.DELETE, {}, pending_action_id=create)
        assert store.get_cached_data("attendance") == []

        queue.requeue_failed(create)

        cached = store.get_cached_data("attendance")
        assert [item["id"] for item in cached] == ["A"]
