"""
Record merger: combines a local snapshot with a freshly fetched remote collection.

Policy is "remote wins, else keep local". Records the remote no longer serves
are kept; deletions are only reconciled explicitly (local delete or push delete),
never inferred from absence. Local changes the remote has not confirmed yet
(queued or failed writes) are the exception to "remote wins".
"""
import logging
from typing import AbstractSet, Dict, List, Optional, Sequence

from ..models.record import Record, RecordOrigin

logger = logging.getLogger(__name__)


def _index(records: Sequence[Record]) -> Dict[str, Record]:
    index: Dict[str, Record] = {}
    for record in records:
        index[record.identity] = record
    return index


def reconcile(local: Optional[Record], remote: Record, pending: bool = False) -> Record:
    """
    The remote copy of one record, stamped as confirmed.

    A local pending delete keeps its origin and failure flag: the remote copy
    still exists until the delete is confirmed, but the record must not come
    back to life in the meantime. An unconfirmed local edit (``pending``, or a
    write that failed) is kept whole until its write succeeds.
    """
    if local is None:
        return remote.confirmed()
    if local.origin == RecordOrigin.LOCAL_PENDING_DELETE:
        return remote.model_copy(
            update={"origin": RecordOrigin.LOCAL_PENDING_DELETE, "sync_failed": local.sync_failed}
        )
    if local.origin != RecordOrigin.SYNCED and (pending or local.sync_failed):
        if local.created_at is None and remote.created_at is not None:
            return local.model_copy(update={"created_at": remote.created_at})
        return local
    return remote.confirmed()


def merge(
    collection: str,
    local: Sequence[Record],
    remote: Sequence[Record],
    pending: AbstractSet[str] = frozenset(),
) -> List[Record]:
    """
    Merge ``local`` and ``remote`` into one deduplicated, newest-first list.

    Every identity served by the remote takes the remote copy unless
    ``reconcile`` keeps the local change (``pending`` holds the identities
    that still have queued operations). Local-only identities pass through
    unchanged. The union keeps local order with remote-only records appended,
    then a stable sort by ``created_at`` (descending, missing timestamps last)
    gives a deterministic result.
    """
    if not local:
        return list(remote)
    if not remote:
        return list(local)

    merged = _index(local)
    for identity, record in _index(remote).items():
        merged[identity] = reconcile(merged.get(identity), record, identity in pending)

    result = sorted(merged.values(), key=lambda r: r.sort_key, reverse=True)
    logger.debug(
        "Merged %s: local=%d remote=%d result=%d",
        collection, len(local), len(remote), len(result),
    )
    return result
