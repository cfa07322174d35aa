"""
Dirty tracking policy for locally mutated records.

Every local mutation path goes through these functions; they are the only
place where ``is_synced``/``sync_action`` change as a result of a user edit.

    state                      create   update          delete
    new                        CREATE   -               -
    synced                     -        UPDATE          DELETE (tombstone)
    CREATE pending, local id   -        stays CREATE    purge, no remote call
    CREATE pending, server id  -        stays CREATE    DELETE (tombstone)
    UPDATE pending             -        stays UPDATE    DELETE (tombstone)
    DELETE pending             -        rejected        no-op

A row parked for an unknown action tag becomes syncable again on the next
edit or delete. A row parked with a confirmed server id stays parked: the
server already holds it, so only an operator release may retry it.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from ..core.errors import PendingDeletionError
from ..models.base import utcnow
from ..models.sync import SyncAction, generate_local_id


class DeleteDecision(str, Enum):
    PURGE = "purge"          # never left the device, remove right away
    TOMBSTONE = "tombstone"  # keep until the server confirms the delete
    NOOP = "noop"            # already tombstoned


def mark_created(record, now: Optional[datetime] = None):
    """Prepare a brand-new local record: minted id, CREATE pending."""
    now = now or utcnow()
    if not record.id:
        record.id = generate_local_id(record.LOCAL_ID_KIND)
    record.is_synced = False
    record.sync_action = SyncAction.CREATE.value
    record.fail_count = 0
    record.last_sync_attempt = None
    record.parked_reason = None
    record.confirmed_server_id = None
    record.created_at = record.created_at or now
    record.updated_at = now
    return record


def mark_updated(record, now: Optional[datetime] = None):
    """Dirty a record after a field change.

    A record the server has never seen stays CREATE pending; the new values
    simply travel with the pending create.
    """
    action = record.action
    if action is SyncAction.DELETE:
        raise PendingDeletionError(f"{record.entity_name()} {record.id} is pending deletion")
    if action is not SyncAction.CREATE:
        record.sync_action = SyncAction.UPDATE.value
    _unpark(record)
    record.is_synced = False
    record.updated_at = now or utcnow()
    return record


def plan_delete(record) -> DeleteDecision:
    action = record.action
    if action is SyncAction.DELETE:
        return DeleteDecision.NOOP
    if action is SyncAction.CREATE and record.has_local_id and record.confirmed_server_id is None:
        return DeleteDecision.PURGE
    return DeleteDecision.TOMBSTONE


def mark_deleted(record, now: Optional[datetime] = None):
    record.sync_action = SyncAction.DELETE.value
    _unpark(record)
    record.is_synced = False
    record.updated_at = now or utcnow()
    return record


def _unpark(record) -> None:
    if record.confirmed_server_id is None:
        record.parked_reason = None
