"""
Error taxonomy for the sync engine.

Remote adapters raise ``RemoteError`` with a classified code; the coordinator
maps every failure onto a ``SyncErrorKind`` for reporting in the sync state.
"""
from enum import Enum
from typing import Optional


class RemoteErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_IDENTITY = "invalid_identity"
    VALIDATION = "validation"
    NETWORK = "network"
    UNKNOWN = "unknown"


RETRYABLE_CODES = {RemoteErrorCode.NETWORK, RemoteErrorCode.UNKNOWN}


class SyncErrorKind(str, Enum):
    INIT_FAILURE = "init_failure"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    VALIDATION = "validation"
    LOCAL_STORAGE_FAILURE = "local_storage_failure"
    UNKNOWN = "unknown"


class RemoteError(Exception):
    """A classified failure reported by a remote client."""

    def __init__(self, code: RemoteErrorCode, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"RemoteError({self.code.value!r}, {self.message!r})"


class LocalStorageError(Exception):
    """Writing a snapshot to the local store failed."""


class ConfigurationError(Exception):
    """The remote store is missing credentials or is otherwise misconfigured."""


class RecordNotFoundError(KeyError):
    def __init__(self, collection: str, identity: str):
        super().__init__(f"{collection} record {identity} not found")
        self.collection = collection
        self.identity = identity

    def __str__(self) -> str:
        return self.args[0]


class UnknownCollectionError(ValueError):
    def __init__(self, collection: str):
        super().__init__(f"Unknown collection: {collection}")
        self.collection = collection


_REMOTE_KIND = {
    RemoteErrorCode.NOT_FOUND: SyncErrorKind.NOT_FOUND,
    RemoteErrorCode.PERMISSION_DENIED: SyncErrorKind.PERMISSION,
    RemoteErrorCode.INVALID_IDENTITY: SyncErrorKind.VALIDATION,
    RemoteErrorCode.VALIDATION: SyncErrorKind.VALIDATION,
    RemoteErrorCode.NETWORK: SyncErrorKind.NETWORK,
    RemoteErrorCode.UNKNOWN: SyncErrorKind.UNKNOWN,
}


def classify_error(exc: BaseException) -> SyncErrorKind:
    """Map any exception raised during sync onto the error taxonomy."""
    if isinstance(exc, RemoteError):
        return _REMOTE_KIND[exc.code]
    if isinstance(exc, LocalStorageError):
        return SyncErrorKind.LOCAL_STORAGE_FAILURE
    if isinstance(exc, ConfigurationError):
        return SyncErrorKind.INIT_FAILURE
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return SyncErrorKind.NETWORK
    return SyncErrorKind.UNKNOWN
