"""
Pending-operation queue.

Holds local mutations that the remote store has not confirmed yet, one FIFO
list per collection. Operations compose as they are enqueued:

* a newer UPDATE replaces a queued UPDATE for the same record;
* an UPDATE of a record whose CREATE is still queued is folded into the CREATE;
* a DELETE of a record whose CREATE is still queued cancels both.

``drain`` replays a collection against the remote store through a
``DrainHandler`` supplied by the owner. Transient failures keep the operation
queued and stop the drain so ordering is preserved; operations older than the
staleness threshold are dropped after one more failed attempt.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ..core.errors import RemoteError, RemoteErrorCode
from ..models.record import Record, is_temp_identity
from .scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=24)


class OperationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingOperation:
    """A local mutation waiting for remote confirmation."""
    action: OperationAction
    collection: str
    identity: str
    data: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: Optional[datetime] = None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    last_error: Optional[str] = None
    in_flight: bool = False
    cancelled: bool = False  # record deleted locally while its CREATE was in flight


@dataclass
class DrainResult:
    collection: str
    succeeded: int = 0
    dropped: int = 0
    deferred: int = 0

    @property
    def blocked(self) -> bool:
        return self.deferred > 0


class DrainHandler(Protocol):
    async def execute(self, op: PendingOperation) -> Optional[Record]: ...

    def on_success(self, op: PendingOperation, result: Optional[Record]) -> None: ...

    def on_dropped(self, op: PendingOperation, error: RemoteError, stale: bool) -> None: ...

    def on_deferred(self, op: PendingOperation, error: RemoteError) -> None: ...


class PendingOperationQueue:
    def __init__(self, stale_after: timedelta = DEFAULT_STALE_AFTER, clock: Optional[Clock] = None):
        self.stale_after = stale_after
        self.clock = clock or SystemClock()
        self._ops: Dict[str, List[PendingOperation]] = {}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def pending(self, collection: Optional[str] = None) -> List[PendingOperation]:
        if collection is not None:
            return list(self._ops.get(collection, []))
        return [op for ops in self._ops.values() for op in ops]

    def find(self, collection: str, identity: str, action: Optional[OperationAction] = None) -> Optional[PendingOperation]:
        for op in self._ops.get(collection, []):
            if op.identity == identity and (action is None or op.action == action):
                return op
        return None

    def has_pending(self, collection: str, identity: str) -> bool:
        return self.find(collection, identity) is not None

    def is_stale(self, op: PendingOperation) -> bool:
        if op.enqueued_at is None:
            return False
        return self.clock.now() - op.enqueued_at >= self.stale_after

    def __len__(self) -> int:
        return sum(len(ops) for ops in self._ops.values())

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def enqueue(
        self,
        action: OperationAction,
        collection: str,
        record: Record,
        enqueued_at: Optional[datetime] = None,
    ) -> Optional[PendingOperation]:
        """
        Queue ``action`` for ``record``, composing with what is already queued.

        Returns the queued operation that now carries the change, or ``None``
        when the change cancelled out (DELETE of a never-uploaded record).
        """
        action = OperationAction(action)
        ops = self._ops.setdefault(collection, [])
        identity = record.identity
        when = enqueued_at or self.clock.now()

        if action == OperationAction.CREATE:
            op = PendingOperation(action, collection, identity, record.wire_fields(), when)
            ops.append(op)
            return op

        queued_create = self.find(collection, identity, OperationAction.CREATE)

        if action == OperationAction.UPDATE:
            if queued_create is not None and not queued_create.in_flight:
                queued_create.data = record.wire_fields()
                logger.debug("Folded %s %s update into its queued create", collection, identity)
                return queued_create
            superseded = [
                op for op in ops
                if op.action == OperationAction.UPDATE and op.identity == identity and not op.in_flight
            ]
            for op in superseded:
                ops.remove(op)
            if superseded:
                logger.debug("Collapsed %d queued %s %s update(s)", len(superseded), collection, identity)
            op = PendingOperation(action, collection, identity, record.wire_fields(), when)
            ops.append(op)
            return op

        # DELETE
        if queued_create is not None:
            if queued_create.in_flight:
                queued_create.cancelled = True
                ops[:] = [op for op in ops if op is queued_create or op.identity != identity]
            else:
                self.discard(collection, identity)
            logger.debug("Cancelled unsynced %s %s", collection, identity)
            return None
        if is_temp_identity(identity):
            # Never reached the remote store; nothing to delete there
            self.discard(collection, identity)
            return None

        ops[:] = [
            op for op in ops
            if not (op.action == OperationAction.UPDATE and op.identity == identity and not op.in_flight)
        ]
        existing = self.find(collection, identity, OperationAction.DELETE)
        if existing is not None:
            return existing
        op = PendingOperation(action, collection, identity, {}, when)
        ops.append(op)
        return op

    def substitute_identity(self, collection: str, temp_identity: str, remote_identity: str) -> int:
        """Point every queued operation for ``temp_identity`` at ``remote_identity``."""
        count = 0
        for op in self._ops.get(collection, []):
            if op.identity == temp_identity:
                op.identity = remote_identity
                count += 1
        return count

    def discard(self, collection: str, identity: str) -> int:
        """Forget queued operations for ``identity``; in-flight ones are flagged cancelled."""
        ops = self._ops.get(collection, [])
        kept = []
        removed = 0
        for op in ops:
            if op.identity != identity:
                kept.append(op)
            elif op.in_flight:
                op.cancelled = True
                kept.append(op)
            else:
                removed += 1
        ops[:] = kept
        return removed

    def _remove(self, op: PendingOperation) -> None:
        ops = self._ops.get(op.collection, [])
        if op in ops:
            ops.remove(op)

    def _next(self, collection: str) -> Optional[PendingOperation]:
        for op in self._ops.get(collection, []):
            if not op.in_flight:
                return op
        return None

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, collection: str, handler: DrainHandler) -> DrainResult:
        """Replay queued operations for ``collection`` in FIFO order."""
        result = DrainResult(collection)
        while True:
            op = self._next(collection)
            if op is None:
                break

            op.in_flight = True
            try:
                outcome = await handler.execute(op)
            except RemoteError as exc:
                error: Optional[RemoteError] = exc
                outcome = None
            else:
                error = None
            finally:
                op.in_flight = False

            if error is None:
                self._succeed(op, outcome, handler, result)
                continue
            op.last_error = error.message
            if not self._resolve_failure(op, error, handler, result):
                break

        if result.succeeded or result.dropped or result.deferred:
            logger.info(
                "Drained %s: %d succeeded, %d dropped, %d deferred",
                collection, result.succeeded, result.dropped, result.deferred,
            )
        return result

    def _succeed(self, op: PendingOperation, outcome: Optional[Record], handler: DrainHandler, result: DrainResult) -> None:
        self._remove(op)
        result.succeeded += 1
        handler.on_success(op, outcome)

    def _drop(self, op: PendingOperation, error: RemoteError, stale: bool, handler: DrainHandler, result: DrainResult) -> None:
        self._remove(op)
        if op.action == OperationAction.CREATE:
            # Later operations for a record that will never exist remotely cannot succeed
            self.discard(op.collection, op.identity)
        result.dropped += 1
        handler.on_dropped(op, error, stale)

    def _resolve_failure(self, op: PendingOperation, error: RemoteError, handler: DrainHandler, result: DrainResult) -> bool:
        """Handle a failed attempt; returns whether draining may continue."""
        if error.code == RemoteErrorCode.NOT_FOUND and op.action == OperationAction.DELETE:
            self._succeed(op, None, handler, result)
            return True

        if error.code == RemoteErrorCode.INVALID_IDENTITY and is_temp_identity(op.identity):
            # Not created remotely yet
            if op.action == OperationAction.DELETE:
                self._succeed(op, None, handler, result)
                return True
            if op.action == OperationAction.UPDATE:
                logger.info("Re-queueing %s %s update as a create", op.collection, op.identity)
                op.action = OperationAction.CREATE
                return True

        if error.retryable:
            op.attempts += 1
            if self.is_stale(op):
                logger.warning(
                    "Dropping stale %s %s %s after %d attempts: %s",
                    op.action.value, op.collection, op.identity, op.attempts, error.message,
                )
                self._drop(op, error, True, handler, result)
                return True
            result.deferred += 1
            handler.on_deferred(op, error)
            return False

        logger.warning(
            "Dropping %s %s %s: %s (%s)",
            op.action.value, op.collection, op.identity, error.message, error.code.value,
        )
        self._drop(op, error, False, handler, result)
        return True
