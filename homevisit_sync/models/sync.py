"""
Sync metadata shared by every synchronizable entity.
"""
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from ..core.config import settings
from .base import generate_uuid


class SyncAction(str, Enum):
    """Operation still owed to the remote authority. NULL means nothing is owed."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def parse(cls, value) -> Optional["SyncAction"]:
        """Return the enum member for a stored tag, or None for NULL/unknown tags."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class SyncMixin:
    """Columns tracking whether a row still owes the server an operation."""

    is_synced = Column(Boolean, nullable=False, default=True, index=True)
    # Stored as plain text so a legacy/unknown tag can still be read and rejected
    sync_action = Column(String(10), nullable=True)
    last_sync_attempt = Column(DateTime, nullable=True)
    fail_count = Column(Integer, nullable=False, default=0)
    # Set when automatic sync gave up on the row; pending() skips it until released
    parked_reason = Column(String(255), nullable=True)
    # Server id of a create the server confirmed but that could not be applied locally
    confirmed_server_id = Column(String, nullable=True)

    # Locally-minted ids are "<LOCAL_ID_PREFIX><LOCAL_ID_KIND>_<uuid>"
    LOCAL_ID_KIND = "record"

    # Reference column -> parent model. Rewritten when the parent is remapped.
    SYNC_REFERENCES: Dict[str, type] = {}

    # Columns that are bookkeeping rather than domain data
    SYNC_COLUMNS = frozenset({
        "id", "is_synced", "sync_action", "last_sync_attempt", "fail_count",
        "parked_reason", "confirmed_server_id", "created_at", "updated_at",
    })

    @classmethod
    def domain_columns(cls):
        return [c.key for c in cls.__table__.columns if c.key not in cls.SYNC_COLUMNS]

    @classmethod
    def entity_name(cls) -> str:
        return cls.__name__

    @property
    def action(self) -> Optional[SyncAction]:
        return SyncAction.parse(self.sync_action)

    @property
    def is_parked(self) -> bool:
        return self.parked_reason is not None

    @property
    def has_local_id(self) -> bool:
        return is_local_id(self.id)

    def to_payload(self) -> dict:
        """Body sent to the remote authority, always built from current values."""
        raise NotImplementedError


def is_local_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(settings.LOCAL_ID_PREFIX)


def generate_local_id(kind: str) -> str:
    return f"{settings.LOCAL_ID_PREFIX}{kind}_{generate_uuid()}"
