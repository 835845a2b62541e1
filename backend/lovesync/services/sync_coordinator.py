"""
Sync coordinator: owns the in-memory snapshot of every collection and keeps it
reconciled with the remote document store.

Local mutations are applied optimistically and always succeed against the
snapshot and the local store; remote writes go through the pending-operation
queue. Full syncs drain the queue, fetch every collection and merge it into the
snapshot. Remote problems are reported through the sync state and the
per-record ``sync_failed`` flag, never by failing a local mutation.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.config import Settings
from ..core.errors import (
    ConfigurationError,
    LocalStorageError,
    RecordNotFoundError,
    RemoteError,
    SyncErrorKind,
    UnknownCollectionError,
    classify_error,
)
from ..models.record import Record, RecordOrigin, clean_fields, new_temp_identity
from .assets import AssetService
from .local_store import LocalStore
from .merger import merge, reconcile
from .notifier import ChangeCallback, ChangeNotifier
from .pending_queue import DrainResult, OperationAction, PendingOperation, PendingOperationQueue
from .remote_client import AssetInfo, RemoteClient, Subscription
from .scheduling import Clock, PeriodicTimer, RetryPolicy, SystemClock

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class SyncState:
    status: SyncStatus = SyncStatus.INITIALIZING
    error: Optional[str] = None
    error_kind: Optional[SyncErrorKind] = None
    retry_count: int = 0
    last_synced_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.status in (SyncStatus.READY, SyncStatus.SYNCING)


class _DrainHandler:
    """Routes queue drain outcomes back into the coordinator's snapshot."""

    def __init__(self, coordinator: "SyncCoordinator"):
        self.coordinator = coordinator

    async def execute(self, op: PendingOperation) -> Optional[Record]:
        return await self.coordinator._execute_operation(op)

    def on_success(self, op: PendingOperation, result: Optional[Record]) -> None:
        self.coordinator._confirm_operation(op, result)

    def on_dropped(self, op: PendingOperation, error: RemoteError, stale: bool) -> None:
        self.coordinator._drop_operation(op, error, stale)

    def on_deferred(self, op: PendingOperation, error: RemoteError) -> None:
        self.coordinator._defer_operation(op, error)


class SyncCoordinator:
    def __init__(
        self,
        remote: RemoteClient,
        store: LocalStore,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.settings = settings or Settings()
        self.remote = remote
        self.store = store
        self.clock = clock or SystemClock()
        self.notifier = notifier or ChangeNotifier()
        self.collections: List[str] = list(self.settings.COLLECTIONS)
        self.assets = AssetService(remote)

        self.sync_retry = RetryPolicy(
            max_attempts=self.settings.SYNC_RETRY_MAX_ATTEMPTS,
            base_delay=self.settings.SYNC_RETRY_DELAY_SECONDS,
        )
        self.drain_retry = RetryPolicy(
            max_attempts=None,
            base_delay=self.settings.DRAIN_RETRY_BASE_SECONDS,
            max_delay=self.settings.DRAIN_RETRY_MAX_SECONDS,
            multiplier=2.0,
        )

        self._snapshot: Dict[str, List[Record]] = {c: [] for c in self.collections}
        self._state = SyncState()
        self._queue = PendingOperationQueue(
            stale_after=timedelta(hours=self.settings.PENDING_STALE_HOURS),
            clock=self.clock,
        )
        self._handler = _DrainHandler(self)
        self._drain_locks: Dict[str, asyncio.Lock] = {}
        self._remote_ready = False
        self._closed = False

        self._timer = PeriodicTimer(
            self.settings.SYNC_INTERVAL_SECONDS, self._on_timer, self.clock, name="auto-sync"
        )
        self._subscriptions: Dict[str, Subscription] = {}
        self._drain_tasks: Dict[str, asyncio.Task] = {}
        self._drain_retries: Dict[str, asyncio.Task] = {}
        self._sync_retry_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_records(self, collection: str) -> List[Record]:
        self._require_collection(collection)
        return list(self._snapshot[collection])

    def get_sync_state(self) -> SyncState:
        return dataclasses.replace(self._state)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    def pending_count(self, collection: Optional[str] = None) -> int:
        if collection is None:
            return len(self._queue)
        self._require_collection(collection)
        return len(self._queue.pending(collection))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_local(self) -> None:
        """Populate the snapshot from the local store so reads work offline."""
        for collection in self.collections:
            records = self.store.load(collection)
            self._snapshot[collection] = records
            self._requeue_unsynced(collection, records)
            logger.info("Loaded local %s data: %d items", collection, len(records))
            self.notifier.publish(collection, records)

    async def initialize(self) -> bool:
        """Load the local snapshot, then try to reach the remote store."""
        self.load_local()
        return await self.connect()

    def start(self) -> None:
        """Load the local snapshot now and connect to the remote store in the background."""
        self.load_local()
        if self._connect_task is not None and not self._connect_task.done():
            return
        task = asyncio.get_running_loop().create_task(self.connect(), name="connect")
        task.add_done_callback(self._log_task_failure)
        self._connect_task = task

    async def wait_connected(self) -> bool:
        """Wait for a background connect started by ``start``; True once the remote is ready."""
        task = self._connect_task
        if task is not None and not task.done():
            await asyncio.wait([task])
        return self._remote_ready

    async def connect(self) -> bool:
        """
        Wait for the remote store, run the first full sync and start the push
        subscriptions and the periodic timer. Failure leaves the coordinator in
        local-only mode with an ERROR state; it never raises.
        """
        missing = self.settings.missing_remote_credentials()
        if missing:
            error = ConfigurationError(f"Remote store is not configured: missing {', '.join(missing)}")
            self._set_error(str(error), SyncErrorKind.INIT_FAILURE)
            return False

        try:
            await asyncio.wait_for(self.remote.ready(), timeout=self.settings.REMOTE_READY_TIMEOUT)
        except asyncio.TimeoutError:
            self._set_error("Remote store initialization timeout", SyncErrorKind.INIT_FAILURE)
            return False
        except RemoteError as exc:
            self._set_error(f"Remote store unavailable: {exc.message}", SyncErrorKind.INIT_FAILURE)
            return False

        self._remote_ready = True
        self._state.status = SyncStatus.READY
        self._state.error = None
        self._state.error_kind = None
        logger.info("Remote store ready")

        await self.sync_all()
        if not self._closed:
            self._start_subscriptions()
            self._timer.start()
        return True

    async def close(self) -> None:
        """Stop timers and subscriptions; abandons background work."""
        self._closed = True
        self._timer.stop()
        self._stop_subscriptions()
        tasks = [*self._drain_tasks.values(), *self._drain_retries.values()]
        if self._sync_retry_task is not None:
            tasks.append(self._sync_retry_task)
        if self._connect_task is not None:
            tasks.append(self._connect_task)
        self._connect_task = None
        self._drain_tasks.clear()
        self._drain_retries.clear()
        self._sync_retry_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until no background drain is running."""
        while True:
            pending = [t for t in self._drain_tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def sync_all(self) -> bool:
        """
        Drain every collection, then fetch and merge every collection.

        Returns False without doing anything when a sync is already running or
        the remote store has not been reached.
        """
        if self._state.status == SyncStatus.SYNCING:
            logger.debug("Sync already in progress; skipping")
            return False
        if not self._remote_ready:
            logger.warning("Data sync skipped: remote store not ready")
            return False

        previous = self._state.status
        self._state.status = SyncStatus.SYNCING
        logger.info("Starting full data sync...")
        try:
            for collection in self.collections:
                await self._drain_collection(collection)
            for collection in self.collections:
                remote_records = await self.remote.fetch_all(collection)
                pending = {op.identity for op in self._queue.pending(collection)}
                merged = merge(collection, self._snapshot[collection], remote_records, pending)
                self._commit(collection, merged)
                logger.info("Synced %s data: %d items", collection, len(merged))
        except asyncio.CancelledError:
            logger.info("Full data sync cancelled")
            self._state.status = previous
            raise
        except Exception as exc:
            self._on_sync_failure(exc)
            return False

        self._state.status = SyncStatus.READY
        self._state.error = None
        self._state.error_kind = None
        self._state.retry_count = 0
        self._state.last_synced_at = self.clock.now()
        logger.info("Full data sync completed")
        return True

    async def force_sync(self) -> bool:
        """Manual sync; resets the retry count and reconnects if needed."""
        self._cancel_sync_retry()
        self._state.retry_count = 0
        await self.wait_connected()
        if not self._remote_ready:
            if not await self.connect():
                return False
            return self._state.status == SyncStatus.READY
        return await self.sync_all()

    def _on_sync_failure(self, exc: Exception) -> None:
        kind = classify_error(exc)
        if isinstance(exc, RemoteError):
            logger.warning("Failed to sync all data: %s", exc.message)
        else:
            logger.exception("Failed to sync all data")
        self._set_error(f"Sync failed: {exc}", kind)

        attempt = self._state.retry_count + 1
        if self._closed or not self.sync_retry.allows(attempt):
            logger.error(
                "Sync failed after %d retries; waiting for a manual or scheduled retry",
                self._state.retry_count,
            )
            return
        self._state.retry_count = attempt
        delay = self.sync_retry.delay_for(attempt)
        logger.info("Retrying sync (%d/%s) in %.1fs", attempt, self.sync_retry.max_attempts, delay)
        self._sync_retry_task = asyncio.get_running_loop().create_task(self._retry_sync_after(delay))

    async def _retry_sync_after(self, delay: float) -> None:
        await self.clock.sleep(delay)
        self._sync_retry_task = None
        await self.sync_all()

    def _cancel_sync_retry(self) -> None:
        if self._sync_retry_task is not None:
            self._sync_retry_task.cancel()
            self._sync_retry_task = None

    async def _on_timer(self) -> None:
        status = self._state.status
        if status == SyncStatus.SYNCING:
            return
        if status == SyncStatus.ERROR:
            if self._sync_retry_task is not None:
                return
            self._state.retry_count = 0
        logger.info("Starting auto-sync...")
        await self.sync_all()

    def _set_error(self, message: str, kind: SyncErrorKind) -> None:
        self._state.status = SyncStatus.ERROR
        self._state.error = message
        self._state.error_kind = kind
        logger.warning("Sync state ERROR (%s): %s", kind.value, message)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def add_record(self, collection: str, fields: Mapping[str, Any]) -> Record:
        """Create a record locally and queue its upload."""
        self._require_collection(collection)
        now = self.clock.now()
        record = Record(
            identity=new_temp_identity(),
            data=clean_fields(fields),
            created_at=now,
            updated_at=now,
            origin=RecordOrigin.LOCAL_UNSYNCED,
        )
        logger.info("Adding %s item %s", collection, record.identity)
        self._queue.enqueue(OperationAction.CREATE, collection, record, now)
        self._schedule_drain(collection)
        self._commit(collection, [record, *self._snapshot[collection]], strict=True)
        return record

    def update_record(self, collection: str, identity: str, fields: Mapping[str, Any]) -> Record:
        """Merge ``fields`` into an existing record and queue the update."""
        self._require_collection(collection)
        index, existing = self._find(collection, identity)
        if existing is None or existing.origin == RecordOrigin.LOCAL_PENDING_DELETE:
            raise RecordNotFoundError(collection, identity)

        now = self.clock.now()
        origin = (
            RecordOrigin.LOCAL_UNSYNCED
            if existing.origin == RecordOrigin.LOCAL_UNSYNCED
            else RecordOrigin.LOCAL_MODIFIED
        )
        record = existing.model_copy(
            update={
                "data": {**existing.data, **clean_fields(fields)},
                "updated_at": now,
                "origin": origin,
            }
        )
        logger.info("Updating %s item %s", collection, identity)
        self._queue.enqueue(OperationAction.UPDATE, collection, record, now)
        self._schedule_drain(collection)
        records = list(self._snapshot[collection])
        records[index] = record
        self._commit(collection, records, strict=True)
        return record

    def delete_record(self, collection: str, identity: str) -> bool:
        """
        Delete a record. Never-uploaded records disappear immediately; others
        stay visible as pending deletes until the remote delete is confirmed.
        """
        self._require_collection(collection)
        index, existing = self._find(collection, identity)
        if existing is None:
            logger.warning("%s item %s not found in local data", collection, identity)
            return False
        if existing.origin == RecordOrigin.LOCAL_PENDING_DELETE:
            if not self._queue.has_pending(collection, identity):
                # The earlier delete was given up on; try again
                logger.info("Retrying delete of %s item %s", collection, identity)
                self._queue.enqueue(OperationAction.DELETE, collection, existing, self.clock.now())
                self._schedule_drain(collection)
            return True

        logger.info("Deleting %s item %s", collection, identity)
        if existing.origin == RecordOrigin.LOCAL_UNSYNCED:
            self._queue.enqueue(OperationAction.DELETE, collection, existing)
            records = [r for r in self._snapshot[collection] if r.identity != identity]
            self._commit(collection, records, strict=True)
            return True

        now = self.clock.now()
        record = existing.model_copy(
            update={"origin": RecordOrigin.LOCAL_PENDING_DELETE, "updated_at": now}
        )
        self._queue.enqueue(OperationAction.DELETE, collection, record, now)
        self._schedule_drain(collection)
        records = list(self._snapshot[collection])
        records[index] = record
        self._commit(collection, records, strict=True)
        return True

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    async def upload_asset(
        self, data: bytes, filename: str, mime_type: str = "application/octet-stream"
    ) -> Optional[AssetInfo]:
        if not self._remote_ready:
            logger.warning("Upload of %s skipped: remote store not ready", filename)
            return None
        return await self.assets.upload(data, filename, mime_type)

    async def upload_base64(self, payload: str, filename: str, mime_type: str = "image/jpeg") -> Optional[AssetInfo]:
        if not self._remote_ready:
            logger.warning("Upload of %s skipped: remote store not ready", filename)
            return None
        return await self.assets.upload_base64(payload, filename, mime_type)

    # ------------------------------------------------------------------
    # Queue drain
    # ------------------------------------------------------------------

    async def drain(self, collection: Optional[str] = None) -> List[DrainResult]:
        """Push queued mutations to the remote store (one or all collections)."""
        if not self._remote_ready or self._state.status == SyncStatus.ERROR:
            return []
        if collection is not None:
            self._require_collection(collection)
            return [await self._drain_collection(collection)]
        return [await self._drain_collection(c) for c in self.collections]

    async def _drain_collection(self, collection: str) -> DrainResult:
        lock = self._drain_locks.setdefault(collection, asyncio.Lock())
        async with lock:
            return await self._queue.drain(collection, self._handler)

    def _schedule_drain(self, collection: str) -> None:
        if self._closed or not self._remote_ready or self._state.status == SyncStatus.ERROR:
            return
        existing = self._drain_tasks.get(collection)
        if existing is not None and not existing.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s changes wait for the next sync", collection)
            return
        task = loop.create_task(self.drain(collection), name=f"drain-{collection}")
        task.add_done_callback(self._log_task_failure)
        self._drain_tasks[collection] = task

    def _schedule_drain_retry(self, collection: str, attempt: int) -> None:
        if self._closed:
            return
        existing = self._drain_retries.get(collection)
        if existing is not None and not existing.done():
            return
        delay = self.drain_retry.delay_for(attempt)
        logger.info("Retrying %s drain in %.1fs (attempt %d)", collection, delay, attempt)
        task = asyncio.get_running_loop().create_task(self._retry_drain_after(collection, delay))
        task.add_done_callback(self._log_task_failure)
        self._drain_retries[collection] = task

    async def _retry_drain_after(self, collection: str, delay: float) -> None:
        await self.clock.sleep(delay)
        self._drain_retries.pop(collection, None)
        await self.drain(collection)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background sync task %s failed", task.get_name(), exc_info=exc)

    async def _execute_operation(self, op: PendingOperation) -> Optional[Record]:
        if op.action == OperationAction.CREATE:
            return await self.remote.create(op.collection, op.data)
        if op.action == OperationAction.UPDATE:
            return await self.remote.update(op.collection, op.identity, op.data)
        await self.remote.delete(op.collection, op.identity)
        return None

    def _confirm_operation(self, op: PendingOperation, result: Optional[Record]) -> None:
        collection = op.collection
        if op.action == OperationAction.CREATE:
            self._confirm_create(op, result)
        elif op.action == OperationAction.UPDATE:
            self._confirm_update(op, result)
        else:
            records = [r for r in self._snapshot[collection] if r.identity != op.identity]
            if len(records) != len(self._snapshot[collection]):
                logger.info("Deleted %s item %s", collection, op.identity)
                self._commit(collection, records)

    def _confirm_create(self, op: PendingOperation, result: Record) -> None:
        collection = op.collection
        temp_identity = op.identity
        remote_identity = result.identity
        self._queue.substitute_identity(collection, temp_identity, remote_identity)

        if op.cancelled:
            logger.info(
                "%s item %s was deleted during upload; removing remote copy %s",
                collection, temp_identity, remote_identity,
            )
            self._queue.enqueue(OperationAction.DELETE, collection, result)
            records = [r for r in self._snapshot[collection] if r.identity != remote_identity]
            if len(records) != len(self._snapshot[collection]):
                self._commit(collection, records)
            return

        # A push notification may already have delivered the remote copy
        records = [r for r in self._snapshot[collection] if r.identity != remote_identity]
        index = next((i for i, r in enumerate(records) if r.identity == temp_identity), None)
        if index is None:
            logger.warning("%s item %s vanished before its upload completed", collection, temp_identity)
            records.insert(0, result.confirmed())
            self._commit(collection, records)
            return

        local = records[index]
        if self._queue.has_pending(collection, remote_identity):
            # Edited again while uploading; the queued update carries the newer data
            confirmed = local.model_copy(
                update={
                    "identity": remote_identity,
                    "created_at": result.created_at or local.created_at,
                    "origin": RecordOrigin.LOCAL_MODIFIED,
                    "sync_failed": False,
                }
            )
        else:
            confirmed = result.confirmed()
        records[index] = confirmed
        logger.info("Added %s item %s -> %s", collection, temp_identity, remote_identity)
        self._commit(collection, records)

    def _confirm_update(self, op: PendingOperation, result: Record) -> None:
        collection = op.collection
        index, local = self._find(collection, op.identity)
        if local is None:
            return
        if self._queue.has_pending(collection, op.identity):
            if not local.sync_failed:
                return
            confirmed = local.model_copy(update={"sync_failed": False})
        else:
            confirmed = result.confirmed()
            if confirmed.created_at is None:
                confirmed = confirmed.model_copy(update={"created_at": local.created_at})
        records = list(self._snapshot[collection])
        records[index] = confirmed
        logger.info("Updated %s item %s", collection, op.identity)
        self._commit(collection, records)

    def _drop_operation(self, op: PendingOperation, error: RemoteError, stale: bool) -> None:
        kind = classify_error(error)
        reason = "stale" if stale else kind.value
        logger.error(
            "Gave up on %s of %s item %s (%s): %s",
            op.action.value, op.collection, op.identity, reason, error.message,
        )
        self._mark_sync_failed(op.collection, op.identity, True)

    def _defer_operation(self, op: PendingOperation, error: RemoteError) -> None:
        logger.warning(
            "%s of %s item %s failed (attempt %d): %s",
            op.action.value, op.collection, op.identity, op.attempts, error.message,
        )
        self._mark_sync_failed(op.collection, op.identity, True)
        self._schedule_drain_retry(op.collection, op.attempts)

    def _mark_sync_failed(self, collection: str, identity: str, failed: bool) -> None:
        index, record = self._find(collection, identity)
        if record is None or record.sync_failed == failed:
            return
        records = list(self._snapshot[collection])
        records[index] = record.model_copy(update={"sync_failed": failed})
        self._commit(collection, records)

    def _requeue_unsynced(self, collection: str, records: List[Record]) -> None:
        actions = {
            RecordOrigin.LOCAL_UNSYNCED: OperationAction.CREATE,
            RecordOrigin.LOCAL_MODIFIED: OperationAction.UPDATE,
            RecordOrigin.LOCAL_PENDING_DELETE: OperationAction.DELETE,
        }
        requeued = 0
        for record in reversed(records):
            action = actions.get(record.origin)
            if action is None or self._queue.has_pending(collection, record.identity):
                continue
            self._queue.enqueue(action, collection, record, record.updated_at or record.created_at)
            requeued += 1
        if requeued:
            logger.info("Re-queued %d unsynced %s changes", requeued, collection)

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    def _start_subscriptions(self) -> None:
        for collection in self.collections:
            if collection in self._subscriptions:
                continue
            self._subscriptions[collection] = self.remote.subscribe(
                collection,
                partial(self._on_remote_upsert, collection),
                partial(self._on_remote_upsert, collection),
                partial(self._on_remote_delete, collection),
            )

    def _stop_subscriptions(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()

    def _on_remote_upsert(self, collection: str, record: Record) -> None:
        logger.debug("Realtime update for %s: %s", collection, record.identity)
        index, existing = self._find(collection, record.identity)
        pushed = reconcile(existing, record, self._queue.has_pending(collection, record.identity))
        records = list(self._snapshot[collection])
        if existing is None:
            records.insert(0, pushed)
        else:
            if pushed.created_at is None:
                pushed = pushed.model_copy(update={"created_at": existing.created_at})
            records[index] = pushed
        self._commit(collection, records)

    def _on_remote_delete(self, collection: str, identity: str) -> None:
        logger.debug("Realtime delete for %s: %s", collection, identity)
        self._queue.discard(collection, identity)
        records = [r for r in self._snapshot[collection] if r.identity != identity]
        if len(records) != len(self._snapshot[collection]):
            self._commit(collection, records)

    # ------------------------------------------------------------------
    # Snapshot helpers
    # ------------------------------------------------------------------

    def _require_collection(self, collection: str) -> None:
        if collection not in self._snapshot:
            raise UnknownCollectionError(collection)

    def _find(self, collection: str, identity: str) -> Tuple[int, Optional[Record]]:
        for index, record in enumerate(self._snapshot[collection]):
            if record.identity == identity:
                return index, record
        return -1, None

    def _commit(self, collection: str, records: List[Record], strict: bool = False) -> None:
        """
        Replace the snapshot for ``collection``, persist it and notify observers.

        Persistence is best effort: with ``strict`` a local store failure is
        re-raised after observers have seen the new state.
        """
        self._snapshot[collection] = list(records)
        failure: Optional[LocalStorageError] = None
        try:
            self.store.save(collection, self._snapshot[collection])
        except LocalStorageError as exc:
            failure = exc
            logger.warning("Keeping %s changes in memory only: %s", collection, exc)
        self.notifier.publish(collection, self._snapshot[collection])
        if failure is not None and strict:
            raise failure
