"""
Registry of synchronizable entity types.

Order matters: parents come before the entities that reference them, so a
full sync pass remaps a visit before its protocol is sent.
"""
from enum import Enum
from typing import Dict, List, Tuple

from .patient import Patient
from .visit import Visit
from .protocol import VisitProtocol


class EntityType(str, Enum):
    PATIENT = "patient"
    VISIT = "visit"
    PROTOCOL = "protocol"


SYNCABLE_MODELS: Dict[EntityType, type] = {
    EntityType.PATIENT: Patient,
    EntityType.VISIT: Visit,
    EntityType.PROTOCOL: VisitProtocol,
}

SYNC_ORDER: List[EntityType] = [EntityType.PATIENT, EntityType.VISIT, EntityType.PROTOCOL]


def model_for(entity_type) -> type:
    return SYNCABLE_MODELS[EntityType(entity_type)]


def dependents_of(model) -> List[Tuple[type, str]]:
    """(dependent model, reference column) pairs that point at ``model`` ids."""
    return [
        (candidate, column)
        for candidate in SYNCABLE_MODELS.values()
        for column, parent in candidate.SYNC_REFERENCES.items()
        if parent is model
    ]
