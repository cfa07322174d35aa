"""
Local Record Store.

Durable keyed storage for every synchronizable entity. This is the single
source of truth on the device: UI reads subscribe to it, sync runs take
point-in-time snapshots from it, and every domain mutation goes through the
dirtying helpers below so the dirty-tracking policy always holds.
"""
import itertools
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import RecordNotFoundError, StorageError
from ..models.base import SessionLocal, utcnow
from ..models.registry import dependents_of
from ..models.sync import SyncAction
from . import dirty_tracker
from .dirty_tracker import DeleteDecision

logger = logging.getLogger(__name__)

_TOUCHED_KEY = "touched_models"

Listener = Callable[[List[object]], None]


def _collect_touched(session, flush_context, instances):
    touched = session.info.setdefault(_TOUCHED_KEY, set())
    for obj in itertools.chain(session.new, session.dirty, session.deleted):
        touched.add(type(obj))


def mark_touched(session: Session, model) -> None:
    """Register a change made through a bulk statement the flush hook cannot see."""
    session.info.setdefault(_TOUCHED_KEY, set()).add(model)


def _touch_with_dependents(session: Session, model) -> None:
    # Rows removed by ON DELETE CASCADE never pass through the flush hook
    mark_touched(session, model)
    for dependent, _ in dependents_of(model):
        mark_touched(session, dependent)


class LocalRecordStore:
    """Keyed get/put/delete per entity plus the dirtying update helpers."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal
        self._listeners: Dict[type, List[Listener]] = defaultdict(list)
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """One atomic unit of work. Storage failures surface as ``StorageError``."""
        session = self._session_factory()
        session.expire_on_commit = False
        event.listen(session, "before_flush", _collect_touched)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Local store transaction rolled back: %s", exc)
            raise StorageError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            touched = session.info.get(_TOUCHED_KEY, set())
            session.close()
        # Only reached after a successful commit
        if touched:
            self._notify(touched)

    # ------------------------------------------------------------------
    # Snapshot reads
    # ------------------------------------------------------------------

    def get(self, model, record_id: str):
        with self.transaction() as session:
            return session.get(model, record_id)

    def require(self, model, record_id: str):
        record = self.get(model, record_id)
        if record is None:
            raise RecordNotFoundError(model.__name__, record_id)
        return record

    def query(self, model, *criteria, order_by=None, include_deleted: bool = False) -> List[object]:
        with self.transaction() as session:
            q = session.query(model)
            if criteria:
                q = q.filter(*criteria)
            if not include_deleted and hasattr(model, "sync_action"):
                q = q.filter(
                    (model.sync_action.is_(None)) | (model.sync_action != SyncAction.DELETE.value)
                )
            if order_by is not None:
                q = q.order_by(order_by)
            return q.all()

    def list(self, model, include_deleted: bool = False) -> List[object]:
        return self.query(model, order_by=model.id, include_deleted=include_deleted)

    def pending(self, model) -> List[object]:
        """Records a sync run should send, oldest change first. Parked rows are left out."""
        with self.transaction() as session:
            return (
                session.query(model)
                .filter(model.is_synced == False, model.parked_reason.is_(None))  # noqa: E712
                .order_by(model.updated_at, model.id)
                .all()
            )

    def parked(self, model) -> List[object]:
        with self.transaction() as session:
            return (
                session.query(model)
                .filter(model.is_synced == False, model.parked_reason.isnot(None))  # noqa: E712
                .order_by(model.last_sync_attempt, model.id)
                .all()
            )

    def parked_count(self, model) -> int:
        with self.transaction() as session:
            return (
                session.query(model)
                .filter(model.is_synced == False, model.parked_reason.isnot(None))  # noqa: E712
                .count()
            )

    def pending_count(self, model) -> int:
        """Every record still owing the server an operation, parked ones included."""
        with self.transaction() as session:
            return session.query(model).filter(model.is_synced == False).count()  # noqa: E712

    # ------------------------------------------------------------------
    # Raw keyed writes
    # ------------------------------------------------------------------

    def put(self, record):
        """Insert or replace by primary key. Sync metadata is stored as given."""
        with self.transaction() as session:
            return session.merge(record)

    def delete(self, model, record_id: str) -> bool:
        """Physically remove a row. Dependent rows follow the table's FK rules."""
        with self.transaction() as session:
            deleted = session.query(model).filter(model.id == record_id).delete(synchronize_session=False)
            _touch_with_dependents(session, model)
            return deleted > 0

    # ------------------------------------------------------------------
    # Dirtying helpers (the only path for local domain edits)
    # ------------------------------------------------------------------

    def create_local(self, model, **fields):
        self._check_fields(model, fields)
        with self.transaction() as session:
            record = model(**fields)
            dirty_tracker.mark_created(record)
            session.add(record)
            logger.debug("Created %s %s locally", model.__name__, record.id)
            return record

    def update_fields(self, model, record_id: str, **fields):
        self._check_fields(model, fields)
        with self.transaction() as session:
            record = self._require(session, model, record_id)
            for key, value in fields.items():
                setattr(record, key, value)
            dirty_tracker.mark_updated(record)
            return record

    def mark_deleted(self, model, record_id: str) -> DeleteDecision:
        with self.transaction() as session:
            record = self._require(session, model, record_id)
            decision = dirty_tracker.plan_delete(record)
            if decision is DeleteDecision.PURGE:
                session.delete(record)
                _touch_with_dependents(session, model)
                logger.debug("Purged local-only %s %s", model.__name__, record_id)
            elif decision is DeleteDecision.TOMBSTONE:
                dirty_tracker.mark_deleted(record)
            return decision

    # ------------------------------------------------------------------
    # Sync bookkeeping (used by the sync engine only)
    # ------------------------------------------------------------------

    def mark_synced(
        self,
        model,
        record_id: str,
        expected_updated_at: datetime,
        canonical_fields: Optional[dict] = None,
        remote_updated_at: Optional[datetime] = None,
    ) -> bool:
        """Clear the dirty state unless the row was edited after the snapshot.

        Returns False when the row changed (or vanished) while the remote call
        was in flight; it then stays pending for the next pass.
        """
        now = utcnow()
        with self.transaction() as session:
            record = session.get(model, record_id)
            if record is None:
                return False
            record.last_sync_attempt = now
            if record.updated_at != expected_updated_at:
                logger.info(
                    "%s %s changed during sync; keeping it pending", model.__name__, record_id
                )
                return False
            self._apply_canonical(record, canonical_fields)
            if remote_updated_at is not None:
                record.updated_at = remote_updated_at
            record.is_synced = True
            record.sync_action = None
            record.fail_count = 0
            record.parked_reason = None
            record.confirmed_server_id = None
            return True

    def record_failure(self, model, record_id: str) -> None:
        """Count a failed attempt. Action tag and domain fields stay untouched."""
        with self.transaction() as session:
            session.query(model).filter(model.id == record_id).update(
                {
                    model.fail_count: model.fail_count + 1,
                    model.last_sync_attempt: utcnow(),
                },
                synchronize_session=False,
            )
            mark_touched(session, model)

    def park(self, model, record_id: str, reason: str, confirmed_server_id: Optional[str] = None) -> None:
        """Count a failed attempt and stop retrying the record automatically."""
        values = {
            model.fail_count: model.fail_count + 1,
            model.last_sync_attempt: utcnow(),
            model.parked_reason: reason[:255],
        }
        if confirmed_server_id is not None:
            values[model.confirmed_server_id] = confirmed_server_id
        with self.transaction() as session:
            session.query(model).filter(model.id == record_id).update(values, synchronize_session=False)
            mark_touched(session, model)
        logger.warning("Parked %s %s: %s", model.__name__, record_id, reason)

    def release(self, model, record_id: str) -> bool:
        """Hand a parked record back to the sync runs. False if it was not parked."""
        with self.transaction() as session:
            released = (
                session.query(model)
                .filter(model.id == record_id, model.parked_reason.isnot(None))
                .update({model.parked_reason: None}, synchronize_session=False)
            )
            mark_touched(session, model)
        if released:
            logger.info("Released parked %s %s", model.__name__, record_id)
        return released > 0

    def purge(self, model, record_id: str) -> bool:
        return self.delete(model, record_id)

    # ------------------------------------------------------------------
    # Cache fill from the server
    # ------------------------------------------------------------------

    def cache_remote(self, model, rows: Iterable[dict]) -> int:
        """Store server rows as synced. Rows with unsent local changes are kept."""
        cached = 0
        with self.transaction() as session:
            for row in rows:
                existing = session.get(model, row["id"])
                if existing is not None and not getattr(existing, "is_synced", True):
                    logger.debug("Skipping cache fill of pending %s %s", model.__name__, row["id"])
                    continue
                columns = model.__table__.columns
                # A null for a NOT NULL column falls back to the column default
                values = {
                    k: v for k, v in row.items()
                    if k in columns.keys() and (v is not None or columns[k].nullable)
                }
                record = model(**values)
                if hasattr(model, "is_synced"):
                    record.is_synced = True
                    record.sync_action = None
                    record.fail_count = 0
                now = utcnow()
                if record.created_at is None and existing is not None:
                    record.created_at = existing.created_at
                record.created_at = record.created_at or now
                record.updated_at = record.updated_at or now
                session.merge(record)
                cached += 1
        return cached

    # ------------------------------------------------------------------
    # Reactive reads
    # ------------------------------------------------------------------

    def subscribe(self, model, callback: Listener) -> Callable[[], None]:
        """Deliver the current records now and again after every committed change."""
        with self._listeners_lock:
            self._listeners[model].append(callback)
        callback(self.list(model))

        def unsubscribe():
            with self._listeners_lock:
                if callback in self._listeners[model]:
                    self._listeners[model].remove(callback)

        return unsubscribe

    def _notify(self, touched) -> None:
        for model in touched:
            with self._listeners_lock:
                listeners = list(self._listeners.get(model, ()))
            if not listeners:
                continue
            records = self.list(model)
            for callback in listeners:
                try:
                    callback(records)
                except Exception:
                    logger.exception("Store listener for %s failed", model.__name__)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(session: Session, model, record_id: str):
        record = session.get(model, record_id)
        if record is None:
            raise RecordNotFoundError(model.__name__, record_id)
        return record

    @staticmethod
    def _check_fields(model, fields: dict) -> None:
        allowed = set(model.domain_columns()) | {"id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {model.__name__} field(s): {', '.join(sorted(unknown))}")

    @staticmethod
    def _apply_canonical(record, canonical_fields: Optional[dict]) -> None:
        for key, value in server_values(type(record), canonical_fields).items():
            setattr(record, key, value)


def server_values(model, canonical_fields: Optional[dict]) -> dict:
    """Server-returned domain values that may overwrite local ones.

    Reference columns are maintained locally by identity remapping, so the
    server's copy of them is ignored, and so is a null for a NOT NULL column.
    """
    if not canonical_fields:
        return {}
    table_columns = model.__table__.columns
    columns = set(model.domain_columns()) - set(model.SYNC_REFERENCES)
    return {
        key: value for key, value in canonical_fields.items()
        if key in columns and (value is not None or table_columns[key].nullable)
    }
