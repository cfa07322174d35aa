"""
Sync engine: pushes pending local records to the remote authority.

One engine exists per entity type. A run takes a snapshot of the pending
records and handles each one independently; a failure on one record never
stops the others. Only a local storage failure aborts a run, and it leaves
every record not yet processed exactly as it was.

Records that retrying cannot fix (an unknown action tag, or a create the
server confirmed under an id another local row already holds) are parked:
they still count as pending, but later runs skip them until released.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..core.errors import (
    IdentityConflictError,
    RemoteError,
    StorageError,
    UnresolvedReferenceError,
)
from ..models.base import utcnow
from ..models.registry import EntityType, model_for
from ..models.sync import SyncAction, is_local_id
from .identity import IdentityReconciler
from .record_store import LocalRecordStore
from .remote_client import RemoteAuthority, RemoteRecord

logger = logging.getLogger(__name__)


class SyncOperation(str, Enum):
    REMOTE_CREATE = "remote_create"
    REMOTE_UPDATE = "remote_update"
    REMOTE_DELETE = "remote_delete"
    LOCAL_PURGE = "local_purge"
    CONFIRM_CREATE = "confirm_create"   # server already holds it; apply the known id
    INVALID = "invalid"


class SyncOutcome(str, Enum):
    SUCCESS = "success"    # nothing left to do
    PARTIAL = "partial"    # progress made, retry soon
    FAILURE = "failure"    # no progress, back off before retrying


def classify(record) -> SyncOperation:
    """Decide the remote call owed by a pending record.

    A locally-minted id means the server has never seen the record, whatever
    a stale UPDATE tag from a pre-sync edit says, unless a confirmed server
    id is on file from a create that could not be applied locally.
    """
    action = record.action
    confirmed = record.confirmed_server_id is not None
    local = is_local_id(record.id) and not confirmed
    if action is SyncAction.CREATE:
        return SyncOperation.CONFIRM_CREATE if confirmed else SyncOperation.REMOTE_CREATE
    if action is SyncAction.UPDATE:
        if confirmed:
            return SyncOperation.CONFIRM_CREATE
        return SyncOperation.REMOTE_CREATE if local else SyncOperation.REMOTE_UPDATE
    if action is SyncAction.DELETE:
        return SyncOperation.LOCAL_PURGE if local else SyncOperation.REMOTE_DELETE
    return SyncOperation.INVALID


@dataclass
class SyncRunResult:
    entity_type: Optional[EntityType] = None
    success_count: int = 0
    fail_count: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def outcome(self) -> SyncOutcome:
        if self.fail_count == 0:
            return SyncOutcome.SUCCESS
        if self.success_count > 0:
            return SyncOutcome.PARTIAL
        return SyncOutcome.FAILURE

    @property
    def should_retry(self) -> bool:
        return self.outcome is not SyncOutcome.SUCCESS

    @property
    def processed(self) -> int:
        return self.success_count + self.fail_count


class SyncEngine:
    """Reconciles every pending record of one entity type with the server."""

    def __init__(
        self,
        entity_type: EntityType,
        store: LocalRecordStore,
        remote: RemoteAuthority,
        reconciler: Optional[IdentityReconciler] = None,
    ):
        self.entity_type = EntityType(entity_type)
        self.model = model_for(self.entity_type)
        self.store = store
        self.remote = remote
        self.reconciler = reconciler or IdentityReconciler(store)

    def run(self, cancel_event: Optional[threading.Event] = None) -> SyncRunResult:
        result = SyncRunResult(entity_type=self.entity_type)
        name = self.model.__name__
        logger.info("Starting %s synchronization", name)

        try:
            pending = self.store.pending(self.model)
            logger.info("Found %d unsynced %s record(s)", len(pending), name)

            for snapshot in pending:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    logger.info("%s sync cancelled with %d record(s) left", name, len(pending) - result.processed)
                    break
                synced = self.sync_record(snapshot.id)
                if synced is None:
                    continue
                if synced:
                    result.success_count += 1
                else:
                    result.fail_count += 1
        except StorageError:
            logger.exception("%s sync aborted by a local storage failure", name)
            raise
        finally:
            result.finished_at = utcnow()

        logger.info(
            "%s sync completed: %d success, %d failed (%s)",
            name, result.success_count, result.fail_count, result.outcome.value,
        )
        return result

    def sync_record(self, record_id: str) -> Optional[bool]:
        """Reconcile one record. True/False for success/failure, None if nothing was owed.

        The record is re-read right before the call so its payload always
        reflects the latest stored values, including remapped references.
        Parked records are skipped until an operator releases them.
        """
        record = self.store.get(self.model, record_id)
        if record is None or record.is_synced or record.is_parked:
            return None

        name = self.model.__name__
        operation = classify(record)
        try:
            return self._apply(operation, record)
        except StorageError:
            raise
        except RemoteError as exc:
            kind = "transient" if exc.transient else "permanent"
            logger.warning("Failed to sync %s %s (%s, %s): %s", name, record.id, operation.value, kind, exc)
        except UnresolvedReferenceError as exc:
            logger.warning("Holding back %s %s: %s", name, record.id, exc)
        except IdentityConflictError as exc:
            # The server holds the record now; sending the create again would duplicate it
            logger.error("Identity conflict needs operator attention: %s", exc)
            self.store.park(self.model, record.id, str(exc), confirmed_server_id=exc.server_id)
            return False
        except Exception:
            logger.exception("Unexpected error syncing %s %s", name, record.id)
        self.store.record_failure(self.model, record.id)
        return False

    def _apply(self, operation: SyncOperation, record) -> bool:
        name = self.model.__name__

        if operation is SyncOperation.REMOTE_CREATE:
            self._check_references(record)
            remote = self.remote.create(self.entity_type, record.to_payload())
            self.reconciler.reconcile_create(self.model, record.id, remote, record.updated_at)
            logger.debug("Created %s %s on server as %s", name, record.id, remote.server_id)
            return True

        if operation is SyncOperation.CONFIRM_CREATE:
            # No second create: remap to the known id and resend the values as an update
            server_id = record.confirmed_server_id
            self.reconciler.reconcile_create(self.model, record.id, RemoteRecord(server_id=server_id), None)
            logger.info("Applied confirmed server id %s to %s %s", server_id, name, record.id)
            return True

        if operation is SyncOperation.REMOTE_UPDATE:
            self._check_references(record)
            remote = self.remote.update(self.entity_type, record.id, record.to_payload())
            self.store.mark_synced(self.model, record.id, record.updated_at, remote.fields, remote.updated_at)
            logger.debug("Updated %s %s on server", name, record.id)
            return True

        if operation is SyncOperation.REMOTE_DELETE:
            self.remote.delete(self.entity_type, record.confirmed_server_id or record.id)
            self.store.purge(self.model, record.id)
            logger.debug("Deleted %s %s on server", name, record.id)
            return True

        if operation is SyncOperation.LOCAL_PURGE:
            # The server never saw it, so there is nothing to delete remotely
            self.store.purge(self.model, record.id)
            logger.debug("Purged local-only %s %s", name, record.id)
            return True

        # Retrying cannot fix an unknown tag; a local edit or an operator release can
        logger.error("Unknown sync action %r for %s %s", record.sync_action, name, record.id)
        self.store.park(self.model, record.id, f"unknown sync action {record.sync_action!r}")
        return False

    def _check_references(self, record) -> None:
        for column in record.SYNC_REFERENCES:
            parent_id = getattr(record, column)
            if is_local_id(parent_id):
                raise UnresolvedReferenceError(self.model.__name__, record.id, column, parent_id)
