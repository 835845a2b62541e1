from datetime import timedelta

import pytest

from lovesync.core.errors import RemoteError, RemoteErrorCode
from lovesync.models.record import Record, new_temp_identity
from lovesync.services.pending_queue import OperationAction, PendingOperationQueue
from conftest import FakeClock

REMOTE_ID = "a" * 24


def _record(identity=None, **data):
    return Record(identity=identity or new_temp_identity(), data=data)


class RecordingHandler:
    """Drain handler that replays scripted outcomes and records callbacks."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.executed = []
        self.succeeded = []
        self.dropped = []
        self.deferred = []

    async def execute(self, op):
        self.executed.append((op.action, op.identity, dict(op.data)))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, RemoteError):
            raise outcome
        return outcome

    def on_success(self, op, result):
        self.succeeded.append((op.action, op.identity))

    def on_dropped(self, op, error, stale):
        self.dropped.append((op.action, op.identity, error.code, stale))

    def on_deferred(self, op, error):
        self.deferred.append((op.action, op.identity, error.code))


class TestEnqueue:
    def setup_method(self):
        self.clock = FakeClock()
        self.queue = PendingOperationQueue(clock=self.clock)

    def test_create_is_queued_with_wire_fields(self):
        record = _record(content="hi", origin="x")
        op = self.queue.enqueue(OperationAction.CREATE, "Message", record)
        assert op.action == OperationAction.CREATE
        assert op.data == {"content": "hi"}
        assert op.enqueued_at == self.clock.now()
        assert len(self.queue) == 1

    def test_update_folds_into_queued_create(self):
        """Editing a never-uploaded record rewrites its queued create."""
        record = _record(content="v1")
        self.queue.enqueue(OperationAction.CREATE, "Message", record)
        op = self.queue.enqueue(OperationAction.UPDATE, "Message", record.model_copy(update={"data": {"content": "v2"}}))
        assert op.action == OperationAction.CREATE
        assert op.data == {"content": "v2"}
        assert len(self.queue) == 1

    def test_newer_update_replaces_queued_update(self):
        record = _record(REMOTE_ID, content="v1")
        self.queue.enqueue(OperationAction.UPDATE, "Diary", record)
        self.queue.enqueue(OperationAction.UPDATE, "Diary", record.model_copy(update={"data": {"content": "v2"}}))
        pending = self.queue.pending("Diary")
        assert len(pending) == 1
        assert pending[0].data == {"content": "v2"}

    def test_delete_of_unsynced_record_cancels_create(self):
        record = _record(content="oops")
        self.queue.enqueue(OperationAction.CREATE, "Message", record)
        self.queue.enqueue(OperationAction.UPDATE, "Message", record)
        assert self.queue.enqueue(OperationAction.DELETE, "Message", record) is None
        assert len(self.queue) == 0

    def test_delete_of_temp_identity_without_create_is_noop(self):
        assert self.queue.enqueue(OperationAction.DELETE, "Message", _record()) is None
        assert len(self.queue) == 0

    def test_delete_removes_queued_updates_and_dedupes(self):
        record = _record(REMOTE_ID, content="v1")
        self.queue.enqueue(OperationAction.UPDATE, "Photo", record)
        first = self.queue.enqueue(OperationAction.DELETE, "Photo", record)
        second = self.queue.enqueue(OperationAction.DELETE, "Photo", record)
        assert first is second
        assert [op.action for op in self.queue.pending("Photo")] == [OperationAction.DELETE]

    def test_collections_are_independent(self):
        self.queue.enqueue(OperationAction.CREATE, "Message", _record())
        self.queue.enqueue(OperationAction.CREATE, "Diary", _record())
        assert len(self.queue.pending("Message")) == 1
        assert len(self.queue.pending("Diary")) == 1
        assert len(self.queue) == 2

    def test_substitute_identity(self):
        record = _record(content="hi")
        self.queue.enqueue(OperationAction.CREATE, "Message", record)
        assert self.queue.substitute_identity("Message", record.identity, REMOTE_ID) == 1
        assert self.queue.has_pending("Message", REMOTE_ID)
        assert not self.queue.has_pending("Message", record.identity)


class TestDrain:
    def setup_method(self):
        self.clock = FakeClock()
        self.queue = PendingOperationQueue(stale_after=timedelta(hours=24), clock=self.clock)

    @pytest.mark.asyncio
    async def test_drains_in_fifo_order(self):
        first = _record(REMOTE_ID, n=1)
        second = _record("b" * 24, n=2)
        self.queue.enqueue(OperationAction.UPDATE, "Message", first)
        self.queue.enqueue(OperationAction.DELETE, "Message", second)
        handler = RecordingHandler([first, None])
        result = await self.queue.drain("Message", handler)
        assert [e[0] for e in handler.executed] == [OperationAction.UPDATE, OperationAction.DELETE]
        assert result.succeeded == 2
        assert len(self.queue) == 0

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_order_and_stops(self):
        """A NETWORK failure leaves the operation at the head and blocks later ones."""
        self.queue.enqueue(OperationAction.UPDATE, "Message", _record(REMOTE_ID, n=1))
        self.queue.enqueue(OperationAction.UPDATE, "Message", _record("b" * 24, n=2))
        handler = RecordingHandler([RemoteError(RemoteErrorCode.NETWORK, "offline")])
        result = await self.queue.drain("Message", handler)
        assert result.blocked
        assert len(handler.executed) == 1
        pending = self.queue.pending("Message")
        assert [op.identity for op in pending] == [REMOTE_ID, "b" * 24]
        assert pending[0].attempts == 1
        assert pending[0].last_error == "offline"

    @pytest.mark.asyncio
    async def test_not_found_delete_counts_as_success(self):
        self.queue.enqueue(OperationAction.DELETE, "Diary", _record(REMOTE_ID))
        handler = RecordingHandler([RemoteError(RemoteErrorCode.NOT_FOUND)])
        result = await self.queue.drain("Diary", handler)
        assert result.succeeded == 1
        assert handler.succeeded == [(OperationAction.DELETE, REMOTE_ID)]

    @pytest.mark.asyncio
    async def test_permanent_failure_drops_and_continues(self):
        self.queue.enqueue(OperationAction.UPDATE, "Diary", _record(REMOTE_ID))
        self.queue.enqueue(OperationAction.UPDATE, "Diary", _record("b" * 24))
        handler = RecordingHandler([RemoteError(RemoteErrorCode.PERMISSION_DENIED), None])
        result = await self.queue.drain("Diary", handler)
        assert result.dropped == 1
        assert result.succeeded == 1
        assert handler.dropped == [(OperationAction.UPDATE, REMOTE_ID, RemoteErrorCode.PERMISSION_DENIED, False)]

    @pytest.mark.asyncio
    async def test_dropped_create_discards_followups(self):
        record = _record(content="bad")
        self.queue.enqueue(OperationAction.CREATE, "Message", record)
        self.queue.enqueue(OperationAction.UPDATE, "Message", _record(REMOTE_ID))
        handler = RecordingHandler([RemoteError(RemoteErrorCode.VALIDATION), None])
        await self.queue.drain("Message", handler)
        assert not self.queue.has_pending("Message", record.identity)
        assert len(self.queue) == 0

    @pytest.mark.asyncio
    async def test_stale_operation_dropped_after_failed_attempt(self):
        self.queue.enqueue(OperationAction.DELETE, "Message", _record(REMOTE_ID))
        await self.clock.advance(25 * 3600)
        handler = RecordingHandler([RemoteError(RemoteErrorCode.NETWORK)])
        result = await self.queue.drain("Message", handler)
        assert result.dropped == 1
        assert handler.dropped == [(OperationAction.DELETE, REMOTE_ID, RemoteErrorCode.NETWORK, True)]
        assert len(self.queue) == 0

    @pytest.mark.asyncio
    async def test_invalid_temp_identity_update_becomes_create(self):
        record = _record(content="hi")
        op = self.queue.enqueue(OperationAction.UPDATE, "Message", record)
        created = Record(identity=REMOTE_ID, data={"content": "hi"})
        handler = RecordingHandler([RemoteError(RemoteErrorCode.INVALID_IDENTITY), created])
        result = await self.queue.drain("Message", handler)
        assert op.action == OperationAction.CREATE
        assert [e[0] for e in handler.executed] == [OperationAction.UPDATE, OperationAction.CREATE]
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_delete_during_in_flight_create_flags_it(self):
        record = _record(content="hi")
        self.queue.enqueue(OperationAction.CREATE, "Message", record)
        queue = self.queue
        seen = {}

        class DeletingHandler(RecordingHandler):
            async def execute(self, op):
                queue.enqueue(OperationAction.DELETE, "Message", record)
                seen["cancelled"] = op.cancelled
                return Record(identity=REMOTE_ID, data={})

            def on_success(self, op, result):
                seen["cancelled_on_success"] = op.cancelled

        await self.queue.drain("Message", DeletingHandler())
        assert seen == {"cancelled": True, "cancelled_on_success": True}
