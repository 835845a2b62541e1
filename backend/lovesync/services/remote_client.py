"""
Remote document store client.

Defines the contract the sync coordinator relies on and an HTTP implementation
for a LeanCloud-style REST API. Every failure is raised as a classified
``RemoteError`` so callers never see transport-specific exceptions.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol
from urllib.parse import quote

import httpx

from ..core.errors import RemoteError, RemoteErrorCode
from ..models.record import Record, clean_fields, is_remote_identity
from .scheduling import Clock, PeriodicTimer, SystemClock

logger = logging.getLogger(__name__)

RecordCallback = Callable[[Record], None]
IdentityCallback = Callable[[str], None]

# LeanCloud error codes carried in the response body
LC_OBJECT_NOT_FOUND = 101
LC_PERMISSION_DENIED = 119


@dataclass(frozen=True)
class AssetInfo:
    identity: str
    url: str
    name: str
    size: int
    sha256: str


class Subscription(Protocol):
    def close(self) -> None: ...


class RemoteClient(Protocol):
    async def ready(self) -> None: ...

    async def fetch_all(self, collection: str) -> List[Record]: ...

    async def create(self, collection: str, data: Mapping[str, Any]) -> Record: ...

    async def update(self, collection: str, identity: str, data: Mapping[str, Any]) -> Record: ...

    async def delete(self, collection: str, identity: str) -> None: ...

    def subscribe(
        self,
        collection: str,
        on_create: RecordCallback,
        on_update: RecordCallback,
        on_delete: IdentityCallback,
    ) -> Subscription: ...

    async def upload_asset(self, data: bytes, filename: str, mime_type: str) -> AssetInfo: ...

    async def aclose(self) -> None: ...


def check_remote_identity(identity: str) -> None:
    """Reject identities the remote store could never have issued."""
    if not is_remote_identity(identity):
        raise RemoteError(
            RemoteErrorCode.INVALID_IDENTITY,
            f"Invalid objectId format: {identity}. ObjectId must be a 24-character hex string.",
        )


def error_from_response(response: httpx.Response) -> RemoteError:
    """Classify a non-2xx response."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code")
    message = str(body.get("error") or response.reason_phrase or f"HTTP {status}")

    if status == 429 or status >= 500:
        kind = RemoteErrorCode.NETWORK
    elif status == 404 or code == LC_OBJECT_NOT_FOUND:
        kind = RemoteErrorCode.NOT_FOUND
    elif status in (401, 403) or code == LC_PERMISSION_DENIED:
        kind = RemoteErrorCode.PERMISSION_DENIED
    elif 400 <= status < 500:
        kind = RemoteErrorCode.VALIDATION
    else:
        kind = RemoteErrorCode.UNKNOWN
    return RemoteError(kind, message, status_code=status)


class HttpRemoteClient:
    """REST client for one LeanCloud application."""

    PAGE_SIZE = 1000

    def __init__(
        self,
        app_id: str,
        app_key: str,
        server_url: str,
        timeout: float = 10,
        poll_interval: float = 30,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = server_url.rstrip("/") + "/1.1"
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "X-LC-Id": app_id,
                "X-LC-Key": app_key,
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteError(RemoteErrorCode.NETWORK, f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise RemoteError(RemoteErrorCode.NETWORK, f"{method} {path} failed: {detail}") from exc

        if not response.is_success:
            error = error_from_response(response)
            logger.warning("Remote %s %s failed (%s): %s", method, path, response.status_code, error.message)
            raise error
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteError(RemoteErrorCode.UNKNOWN, f"non_json_response from {path}") from exc
        if not isinstance(payload, dict):
            raise RemoteError(RemoteErrorCode.UNKNOWN, f"unexpected_json_type: {type(payload).__name__}")
        return payload

    async def ready(self) -> None:
        await self._request("GET", "/date")

    async def fetch_all(self, collection: str) -> List[Record]:
        records: List[Record] = []
        skip = 0
        while True:
            payload = await self._request(
                "GET",
                f"/classes/{collection}",
                params={"order": "-createdAt", "limit": self.PAGE_SIZE, "skip": skip},
            )
            results = payload.get("results") or []
            records.extend(Record.from_wire(item) for item in results)
            if len(results) < self.PAGE_SIZE:
                break
            skip += len(results)
        logger.info("Fetched %s data: %d items", collection, len(records))
        return records

    async def create(self, collection: str, data: Mapping[str, Any]) -> Record:
        body = clean_fields(data)
        payload = await self._request(
            "POST",
            f"/classes/{collection}",
            params={"fetchWhenSave": "true"},
            json=body,
        )
        return Record.from_wire({**body, **payload})

    async def update(self, collection: str, identity: str, data: Mapping[str, Any]) -> Record:
        check_remote_identity(identity)
        body = clean_fields(data)
        payload = await self._request(
            "PUT",
            f"/classes/{collection}/{identity}",
            params={"fetchWhenSave": "true"},
            json=body,
        )
        return Record.from_wire({**body, "objectId": identity, **payload})

    async def delete(self, collection: str, identity: str) -> None:
        check_remote_identity(identity)
        await self._request("DELETE", f"/classes/{collection}/{identity}")

    def subscribe(
        self,
        collection: str,
        on_create: RecordCallback,
        on_update: RecordCallback,
        on_delete: IdentityCallback,
    ) -> "PollingSubscription":
        subscription = PollingSubscription(self, collection, on_create, on_update)
        subscription.start()
        return subscription

    async def upload_asset(self, data: bytes, filename: str, mime_type: str) -> AssetInfo:
        payload = await self._request(
            "POST",
            f"/files/{quote(filename)}",
            content=data,
            headers={"Content-Type": mime_type},
        )
        return AssetInfo(
            identity=str(payload.get("objectId", "")),
            url=str(payload.get("url", "")),
            name=str(payload.get("name") or filename),
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class PollingSubscription:
    """
    Change feed for one collection built on ``updatedAt`` polling.

    Objects created after the previous poll are reported as creates, older ones
    as updates. Deletions cannot be observed this way.
    """

    def __init__(
        self,
        client: HttpRemoteClient,
        collection: str,
        on_create: RecordCallback,
        on_update: RecordCallback,
    ):
        self.client = client
        self.collection = collection
        self.on_create = on_create
        self.on_update = on_update
        self.cursor: datetime = client.clock.now()
        self._timer = PeriodicTimer(
            client.poll_interval, self.poll, client.clock, name=f"poll-{collection}"
        )

    def start(self) -> None:
        self._timer.start()

    def close(self) -> None:
        self._timer.stop()

    async def poll(self) -> int:
        where = {"updatedAt": {"$gt": {"__type": "Date", "iso": self.cursor.isoformat()}}}
        payload = await self.client._request(
            "GET",
            f"/classes/{self.collection}",
            params={"where": json.dumps(where), "order": "updatedAt", "limit": HttpRemoteClient.PAGE_SIZE},
        )
        results = payload.get("results") or []
        since = self.cursor
        for item in results:
            record = Record.from_wire(item)
            if record.created_at is not None and record.created_at > since:
                self.on_create(record)
            else:
                self.on_update(record)
            if record.updated_at is not None and record.updated_at > self.cursor:
                self.cursor = record.updated_at
        return len(results)
