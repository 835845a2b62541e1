"""
In-process remote document store used in mock mode and for development.

Behaves like the hosted store: it assigns 24-character hex identities and
server timestamps, validates identities, and pushes change notifications to
subscribers after the mutating call has returned.
"""
import asyncio
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import RemoteError, RemoteErrorCode
from ..models.record import Record, clean_fields
from .remote_client import AssetInfo, IdentityCallback, RecordCallback, check_remote_identity
from .scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)


class MemorySubscription:
    def __init__(
        self,
        owner: "InMemoryRemoteClient",
        collection: str,
        on_create: RecordCallback,
        on_update: RecordCallback,
        on_delete: IdentityCallback,
    ):
        self.owner = owner
        self.collection = collection
        self.on_create = on_create
        self.on_update = on_update
        self.on_delete = on_delete
        self.closed = False

    def deliver(self, kind: str, payload: Any) -> None:
        if self.closed:
            return
        handler = {"create": self.on_create, "update": self.on_update, "delete": self.on_delete}[kind]
        try:
            handler(payload)
        except Exception:
            logger.exception("Push handler for %s %s failed", self.collection, kind)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.owner._unsubscribe(self)


class InMemoryRemoteClient:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.available = True  # flip to False to simulate losing the network
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._subscriptions: List[MemorySubscription] = []
        self._assets: Dict[str, bytes] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table(self, collection: str) -> Dict[str, Record]:
        return self._tables.setdefault(collection, {})

    def _new_identity(self) -> str:
        while True:
            identity = secrets.token_hex(12)
            if not any(identity in table for table in self._tables.values()):
                return identity

    def _check_available(self) -> None:
        if not self.available:
            raise RemoteError(RemoteErrorCode.NETWORK, "remote store unreachable")

    def _push(self, collection: str, kind: str, payload: Any) -> None:
        subscribers = [s for s in self._subscriptions if s.collection == collection]
        if not subscribers:
            return
        loop = asyncio.get_running_loop()
        for subscription in subscribers:
            loop.call_soon(subscription.deliver, kind, payload)

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def seed(self, collection: str, data: Mapping[str, Any], created_at: Optional[datetime] = None) -> Record:
        """Insert a record directly, without notifying subscribers."""
        timestamp = created_at or self.clock.now()
        record = Record(
            identity=self._new_identity(),
            data=clean_fields(data),
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._table(collection)[record.identity] = record
        return record

    def records(self, collection: str) -> List[Record]:
        return list(self._table(collection).values())

    # ------------------------------------------------------------------
    # RemoteClient contract
    # ------------------------------------------------------------------

    async def ready(self) -> None:
        self._check_available()

    async def fetch_all(self, collection: str) -> List[Record]:
        self._check_available()
        newest_inserted_first = list(reversed(list(self._table(collection).values())))
        return sorted(newest_inserted_first, key=lambda r: r.sort_key, reverse=True)

    async def create(self, collection: str, data: Mapping[str, Any]) -> Record:
        self._check_available()
        record = self.seed(collection, data)
        self._push(collection, "create", record)
        return record

    async def update(self, collection: str, identity: str, data: Mapping[str, Any]) -> Record:
        self._check_available()
        check_remote_identity(identity)
        table = self._table(collection)
        existing = table.get(identity)
        if existing is None:
            raise RemoteError(RemoteErrorCode.NOT_FOUND, f"{collection} {identity} not found")
        record = existing.model_copy(
            update={"data": {**existing.data, **clean_fields(data)}, "updated_at": self.clock.now()}
        )
        table[identity] = record
        self._push(collection, "update", record)
        return record

    async def delete(self, collection: str, identity: str) -> None:
        self._check_available()
        check_remote_identity(identity)
        table = self._table(collection)
        if identity not in table:
            raise RemoteError(RemoteErrorCode.NOT_FOUND, f"{collection} {identity} not found")
        del table[identity]
        self._push(collection, "delete", identity)

    def subscribe(
        self,
        collection: str,
        on_create: RecordCallback,
        on_update: RecordCallback,
        on_delete: IdentityCallback,
    ) -> MemorySubscription:
        subscription = MemorySubscription(self, collection, on_create, on_update, on_delete)
        self._subscriptions.append(subscription)
        return subscription

    async def upload_asset(self, data: bytes, filename: str, mime_type: str) -> AssetInfo:
        self._check_available()
        identity = self._new_identity()
        self._assets[identity] = data
        return AssetInfo(
            identity=identity,
            url=f"memory://files/{identity}/{filename}",
            name=filename,
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )

    async def aclose(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
