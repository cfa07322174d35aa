"""
Shared plumbing for the offline-first repositories.

Every mutation is written to the local store first and then, when a sync
trigger is wired in, asks for an immediate sync of the entity type. The
local write never depends on the trigger succeeding.
"""
import logging
from typing import Callable, Iterable, List, Optional, Union

from ..models.registry import EntityType
from ..models.sync import SyncAction
from ..schemas import RemoteDto, to_naive_utc
from ..services.dirty_tracker import DeleteDecision
from ..services.record_store import LocalRecordStore

logger = logging.getLogger(__name__)

SyncTrigger = Callable[[EntityType], object]


class OfflineRepository:
    model = None
    entity_type: Optional[EntityType] = None
    dto = RemoteDto

    def __init__(self, store: Optional[LocalRecordStore] = None, sync_trigger: Optional[SyncTrigger] = None):
        self.store = store or LocalRecordStore()
        self.sync_trigger = sync_trigger

    def request_sync(self) -> None:
        if self.sync_trigger is None or self.entity_type is None:
            return
        try:
            self.sync_trigger(self.entity_type)
        except Exception:
            logger.exception("Could not request %s sync; changes stay queued", self.entity_type.value)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _get_live(self, record_id: str):
        """The record unless it is missing or waiting to be deleted on the server."""
        record = self.store.get(self.model, record_id)
        if record is None or record.action is SyncAction.DELETE:
            return None
        return record

    def _create(self, **fields):
        record = self.store.create_local(self.model, **fields)
        logger.info("%s %s saved locally, pending create", self.model.__name__, record.id)
        self.request_sync()
        return record

    def _update(self, record_id: str, **fields):
        record = self.store.update_fields(self.model, record_id, **fields)
        logger.debug("%s %s updated locally (%s)", self.model.__name__, record_id, record.sync_action)
        self.request_sync()
        return record

    def _delete(self, record_id: str) -> DeleteDecision:
        decision = self.store.mark_deleted(self.model, record_id)
        logger.info("%s %s deleted locally (%s)", self.model.__name__, record_id, decision.value)
        if decision is DeleteDecision.TOMBSTONE:
            self.request_sync()
        return decision

    def _cache(self, items: Iterable[Union[RemoteDto, dict]]) -> int:
        rows = [self.to_row(item) for item in items]
        cached = self.store.cache_remote(self.model, rows)
        logger.info("Cached %d of %d server %s record(s)", cached, len(rows), self.model.__name__)
        return cached

    def to_row(self, item: Union[RemoteDto, dict]) -> dict:
        """Column values for a server DTO (or its raw camelCase JSON)."""
        dto = item if isinstance(item, RemoteDto) else self.dto.model_validate(item)
        if not dto.id:
            raise ValueError(f"Server {self.model.__name__} row has no id")
        row = dto.canonical_fields()
        row["id"] = dto.id
        if dto.created_at is not None:
            row["created_at"] = to_naive_utc(dto.created_at)
        if dto.updated_at is not None:
            row["updated_at"] = dto.server_updated_at
        return row

    def _observe(self, callback: Callable[[List[object]], None], predicate=None) -> Callable[[], None]:
        if predicate is None:
            return self.store.subscribe(self.model, callback)
        return self.store.subscribe(
            self.model, lambda records: callback([r for r in records if predicate(r)])
        )
