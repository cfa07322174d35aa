"""
Error taxonomy for the sync subsystem.

Per-record errors (remote failures, identity conflicts) are contained by the
sync engine and counted; ``StorageError`` aborts the current run.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync subsystem."""


class StorageError(SyncError):
    """The local durability layer failed (I/O, constraint violation)."""


class RemoteError(SyncError):
    """A call to the remote authority did not succeed."""

    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Connectivity loss, timeout or 5xx. Retried on the next run."""

    transient = True


class PermanentRemoteError(RemoteError):
    """The server rejected the record (4xx validation failure)."""

    transient = False


class UnresolvedReferenceError(SyncError):
    """The record still points at a parent that only has a locally-minted id."""

    def __init__(self, entity: str, record_id: str, column: str, parent_id: str):
        super().__init__(f"{entity} {record_id}: {column}={parent_id} has not been synced yet")
        self.column = column
        self.parent_id = parent_id


class IdentityConflictError(SyncError):
    """The server-issued id is already held locally by a different record."""

    def __init__(self, entity: str, local_id: str, server_id: str):
        super().__init__(
            f"{entity} {local_id}: server id {server_id} is already claimed by another local record"
        )
        self.entity = entity
        self.local_id = local_id
        self.server_id = server_id


class RecordNotFoundError(LookupError):
    """No record with the requested id exists in the local store."""

    def __init__(self, entity: str, record_id: str):
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class PendingDeletionError(ValueError):
    """The record is tombstoned and can no longer be edited."""
