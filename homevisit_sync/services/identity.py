"""
Identity reconciliation.

After the server confirms a create, the record's locally-minted id is
replaced by the server-issued one. The rename and every reference rewrite
happen in one store transaction, so no reader ever sees a half-migrated id:
either the old id is still everywhere, or the new one is.
"""
import logging
from datetime import datetime
from typing import Optional

from ..core.errors import IdentityConflictError
from ..models.base import utcnow
from ..models.registry import dependents_of
from ..models.sync import SyncAction
from .record_store import LocalRecordStore, mark_touched, server_values
from .remote_client import RemoteRecord

logger = logging.getLogger(__name__)


class IdentityReconciler:
    def __init__(self, store: LocalRecordStore):
        self.store = store

    def reconcile_create(
        self,
        model,
        record_id: str,
        remote: RemoteRecord,
        snapshot_updated_at: Optional[datetime],
    ) -> Optional[object]:
        """Apply a confirmed remote create to the local row.

        ``snapshot_updated_at`` is the row version that was sent. None means
        the sent values are unknown, so the local values stay pending as an
        update. Returns the stored row keyed by the server id, or None when the
        local row disappeared while the call was in flight.
        """
        with self.store.transaction() as session:
            current = session.get(model, record_id)
            if current is None:
                logger.warning(
                    "%s %s vanished before its create (server id %s) was applied",
                    model.__name__, record_id, remote.server_id,
                )
                return None

            server_id = remote.server_id
            if server_id != record_id:
                claimed = session.get(model, server_id)
                if claimed is not None:
                    raise IdentityConflictError(model.__name__, record_id, server_id)

            edited = snapshot_updated_at is None or current.updated_at != snapshot_updated_at
            values = {
                "last_sync_attempt": utcnow(),
                "fail_count": 0,
                "parked_reason": None,
                "confirmed_server_id": None,
            }
            if edited:
                # Newer local values win; they still owe the server an update
                values.update(is_synced=False, sync_action=SyncAction.UPDATE.value)
            else:
                values.update(server_values(model, remote.fields))
                values.update(is_synced=True, sync_action=None)
                if remote.updated_at is not None:
                    values["updated_at"] = remote.updated_at

            if server_id != record_id:
                values["id"] = server_id
            session.query(model).filter(model.id == record_id).update(values, synchronize_session=False)
            mark_touched(session, model)

            if server_id != record_id:
                self._rewrite_references(session, model, record_id, server_id)
                logger.info("Remapped %s %s -> %s", model.__name__, record_id, server_id)

            session.expunge_all()
            return session.get(model, server_id)

    @staticmethod
    def _rewrite_references(session, model, old_id: str, new_id: str) -> None:
        """Point every dependent row at the new id without dirtying it.

        A pending dependent picks the new id up automatically: payloads are
        always rebuilt from the stored row right before they are sent.
        """
        for dependent, column in dependents_of(model):
            col = getattr(dependent, column)
            # Zero rows when an ON UPDATE CASCADE foreign key already moved them
            rewritten = (
                session.query(dependent)
                .filter(col == old_id)
                .update({column: new_id}, synchronize_session=False)
            )
            mark_touched(session, dependent)
            if rewritten:
                logger.debug(
                    "Rewrote %d %s.%s reference(s) %s -> %s",
                    rewritten, dependent.__name__, column, old_id, new_id,
                )
