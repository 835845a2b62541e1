"""
Record envelope shared by the local snapshot, the pending queue and the remote adapters.

A record is a fixed metadata envelope (identity, timestamps, sync origin, failure
flag) around an open ``data`` map of domain fields. Records are frozen: every
change goes through ``model_copy(update=...)``.
"""
import re
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TEMP_ID_PREFIX = "temp_"
REMOTE_ID_PATTERN = re.compile(r"^[0-9a-f]{24}$")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Keys owned by the envelope or the remote service; never part of ``data``
RESERVED_WIRE_KEYS = frozenset({"objectId", "id", "identity", "createdAt", "updatedAt", "ACL"})
# Local bookkeeping that must never reach the remote store
INTERNAL_KEYS = frozenset({"origin", "sync_failed", "syncFailed"})


class RecordOrigin(str, Enum):
    LOCAL_UNSYNCED = "local_unsynced"            # created locally, no remote counterpart yet
    LOCAL_MODIFIED = "local_modified"            # remote copy exists but local edits are unconfirmed
    LOCAL_PENDING_DELETE = "local_pending_delete"
    SYNCED = "synced"


def new_temp_identity() -> str:
    return TEMP_ID_PREFIX + secrets.token_hex(8)


def is_temp_identity(identity: Optional[str]) -> bool:
    return bool(identity) and identity.startswith(TEMP_ID_PREFIX)


def is_remote_identity(identity: Optional[str]) -> bool:
    return bool(identity) and REMOTE_ID_PATTERN.match(identity) is not None


def clean_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop envelope and bookkeeping keys from a caller-supplied field map."""
    if not fields:
        return {}
    return {
        key: value
        for key, value in fields.items()
        if key not in RESERVED_WIRE_KEYS and key not in INTERNAL_KEYS
    }


def _parse_wire_date(value: Any) -> Any:
    # LeanCloud encodes user dates as {"__type": "Date", "iso": "..."}
    if isinstance(value, dict) and value.get("__type") == "Date":
        return value.get("iso")
    return value


class Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    origin: RecordOrigin = RecordOrigin.SYNCED
    sync_failed: bool = False

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_temporary(self) -> bool:
        return is_temp_identity(self.identity)

    @property
    def sort_key(self) -> datetime:
        return self.created_at or EPOCH

    def confirmed(self) -> "Record":
        """This record as confirmed by the remote store."""
        if self.origin == RecordOrigin.SYNCED and not self.sync_failed:
            return self
        return self.model_copy(update={"origin": RecordOrigin.SYNCED, "sync_failed": False})

    def wire_fields(self) -> Dict[str, Any]:
        """Domain fields as sent to the remote store."""
        return clean_fields(self.data)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "Record":
        """Build a synced record from a remote object payload."""
        identity = payload.get("objectId") or payload.get("id") or payload.get("identity")
        if not identity:
            raise ValueError("remote payload has no object identity")
        return cls(
            identity=str(identity),
            data=clean_fields(payload),
            created_at=_parse_wire_date(payload.get("createdAt")),
            updated_at=_parse_wire_date(payload.get("updatedAt")),
            origin=RecordOrigin.SYNCED,
            sync_failed=False,
        )
