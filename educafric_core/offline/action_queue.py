# =============================================================================
# educafric_core/offline/action_queue.py
# FIFO Action Queue over the local store
# =============================================================================
"""
ActionQueue - ordering and drain contract for queued mutations.

Ordering guarantee: actions that share an entity key are sent strictly in
the order they were enqueued. Once one of them fails, the rest of that
entity waits (transient failure or dead letter) or follows it into the
conflicts list (permanent failure). Independent entities keep draining.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from educafric_core.errors import (
    ActionValidationError,
    PermanentSyncError,
    TransientSyncError,
)
from educafric_core.offline.local_store import LocalDurableStore
from educafric_core.offline.models import (
    DrainReport,
    EntityType,
    FailureReason,
    Operation,
    QueuedAction,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[QueuedAction], Any]


def _coerce_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ActionValidationError(
            f"Unknown {field_name} {value!r} (expected one of: {allowed})",
            field=field_name,
            value=value,
        )


class ActionQueue:
    """
    Logical queue over LocalDurableStore.pending_actions.

    Usage:
        queue = ActionQueue(store)
        queue.enqueue("attendance", "create", {"id": "A", ...}, user_id=7)
        report = queue.drain(api.send_action, max_attempts=5)
    """

    def __init__(self, store: LocalDurableStore):
        self.store = store

    @property
    def size(self) -> int:
        return self.store.pending_count()

    def enqueue(
        self,
        entity_type: Union[EntityType, str],
        operation: Union[Operation, str],
        data: Dict[str, Any],
        user_id: Optional[int] = None,
        entity_id: Optional[Union[str, int]] = None,
    ) -> int:
        """
        Persist a mutation and apply it optimistically to the cache.

        Args:
            entity_type: One of EntityType (or its value)
            operation: create, update or delete
            data: JSON payload sent to the server
            user_id: Author of the mutation
            entity_id: Ordering key; defaults to data["id"]

        Returns:
            The id assigned to the queued action

        Raises:
            ActionValidationError: Unknown type/operation or non-dict payload
            PersistenceError: Local storage failed; nothing was queued
        """
        entity_type = _coerce_enum(EntityType, entity_type, "entity_type")
        operation = _coerce_enum(Operation, operation, "operation")
        if not isinstance(data, dict):
            raise ActionValidationError(
                "Action payload must be a JSON object",
                field="data",
                value=type(data).__name__,
            )

        if entity_id is None and data.get("id") is not None:
            entity_id = data["id"]
        if operation in (Operation.UPDATE, Operation.DELETE) and entity_id is None:
            logger.warning(
                f"{operation.value} on {entity_type.value} queued without an entity id; "
                "the server will reject it"
            )

        action = self.store.queue_action(
            entity_type,
            operation,
            data,
            user_id=user_id,
            entity_id=str(entity_id) if entity_id is not None else None,
        )

        self.store.apply_to_cache(
            entity_type.cache_key,
            operation,
            data,
            pending_action_id=action.id,
            optimistic=True,
        )
        logger.info(f"Queued {entity_type.value} {operation.value} as #{action.id}")
        return action.id

    def drain(self, send_fn: SendFn, max_attempts: int = 5) -> DrainReport:
        """
        Send pending actions in FIFO order.

        Args:
            send_fn: Called once per action; returns the server record or
                raises TransientSyncError / PermanentSyncError
            max_attempts: Transient failures before an action is dead-lettered

        Returns:
            DrainReport describing every action touched in this pass
        """
        report = DrainReport()

        # Entities whose earlier action is parked from a previous pass
        parked: Dict[str, FailureReason] = {}
        for failed in self.store.list_failed_actions():
            key = failed.action.entity_key
            if failed.reason == FailureReason.CONFLICT or key not in parked:
                parked[key] = failed.reason

        blocked: Dict[str, Optional[FailureReason]] = {}

        for action in self.store.list_pending_actions():
            key = action.entity_key
            reason = blocked.get(key) or parked.get(key)

            if reason == FailureReason.CONFLICT:
                self.store.move_to_failed(
                    action.id,
                    FailureReason.CONFLICT,
                    error="An earlier change to this record was rejected",
                )
                report.conflicts.append(action)
                continue
            if reason is not None or key in blocked:
                report.held.append(action)
                continue

            try:
                response = send_fn(action)
            except PermanentSyncError as e:
                self.store.move_to_failed(
                    action.id, FailureReason.CONFLICT,
                    error=e.message, status_code=e.status_code,
                )
                report.conflicts.append(replace(action, last_error=e.message))
                blocked[key] = FailureReason.CONFLICT
                continue
            except TransientSyncError as e:
                error = e.message
            except Exception as e:
                logger.error(f"Unexpected error sending action #{action.id}: {e}", exc_info=True)
                error = str(e) or e.__class__.__name__
            else:
                self.store.mark_synced(action.id)
                report.synced.append((replace(action, synced=True), response))
                continue

            attempts = self.store.record_failure(action.id, error)
            if attempts is None:
                blocked[key] = None
                continue
            failed_action = replace(action, attempt_count=attempts, last_error=error)
            if attempts >= max_attempts:
                self.store.move_to_failed(action.id, FailureReason.DEAD_LETTER, error=error)
                report.dead_letters.append(failed_action)
                blocked[key] = FailureReason.DEAD_LETTER
            else:
                report.transient_failures.append(failed_action)
                blocked[key] = None

        self.store.purge_synced()
        logger.info(f"Drain finished: {report.summary()}")
        return report

    def requeue_failed(self, action_id: int) -> List[int]:
        """
        Queue a failed action again together with the rest of its record.

        Every failed action sharing its entity key, and any action of that
        record still pending, is re-appended in original order so the record
        drains FIFO from its first change.

        Returns:
            New ids in queue order (empty when ``action_id`` is not failed)
        """
        failed = self.store.list_failed_actions()
        target = next((f for f in failed if f.id == action_id), None)
        if target is None:
            return []

        key = target.action.entity_key
        failed_ids = {f.id for f in failed if f.action.entity_key == key}
        pending_ids = {
            a.id for a in self.store.list_pending_actions() if a.entity_key == key
        }
        requeued = self.store.requeue_actions(sorted(failed_ids | pending_ids))

        # Rejected creates were rolled back from the cache; show them again
        for old_id, action in requeued.items():
            if old_id in failed_ids:
                self.store.apply_to_cache(
                    action.entity_type.cache_key,
                    action.operation,
                    action.payload,
                    pending_action_id=action.id,
                    optimistic=True,
                )

        logger.info(
            f"Re-queued {len(requeued)} action(s) for {key} starting from #{action_id}"
        )
        return [a.id for a in requeued.values()]
