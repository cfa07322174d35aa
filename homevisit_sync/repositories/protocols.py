"""
Visit protocols, addressed by the visit they document.

Each visit has at most one protocol. Field edits on a visit without one
create it on the fly, so the clinician can start typing right away.
"""
import logging
from typing import Callable, Dict, Iterable, Optional

from ..core.errors import RecordNotFoundError
from ..models.protocol import ProtocolField, ProtocolTemplate, VisitProtocol
from ..models.registry import EntityType
from ..models.visit import Visit
from ..schemas import VisitProtocolDto
from ..services.dirty_tracker import DeleteDecision
from .base import OfflineRepository

logger = logging.getLogger(__name__)

# Template text column -> protocol column it fills in
TEMPLATE_FIELDS = {
    "complaints_template": ProtocolField.COMPLAINTS,
    "anamnesis_template": ProtocolField.ANAMNESIS,
    "objective_status_template": ProtocolField.OBJECTIVE_STATUS,
    "recommendations_template": ProtocolField.RECOMMENDATIONS,
}


class ProtocolRepository(OfflineRepository):
    model = VisitProtocol
    entity_type = EntityType.PROTOCOL
    dto = VisitProtocolDto

    def get_protocol_for_visit(self, visit_id: str) -> Optional[VisitProtocol]:
        found = self.store.query(VisitProtocol, VisitProtocol.visit_id == visit_id)
        return found[0] if found else None

    def save_protocol(self, visit_id: str, **fields) -> VisitProtocol:
        """Create the visit's protocol or update the existing one."""
        fields.pop("visit_id", None)
        fields.pop("id", None)
        existing = self._find_any(visit_id)
        if existing is not None:
            return self._update(existing.id, **fields)
        self.store.require(Visit, visit_id)
        return self._create(visit_id=visit_id, **fields)

    def update_field(self, visit_id: str, field: str, value: Optional[str]) -> VisitProtocol:
        if field not in ProtocolField.ALL:
            raise ValueError(f"Unknown protocol field: {field}")
        return self.save_protocol(visit_id, **{field: value})

    def update_vitals(
        self,
        visit_id: str,
        temperature: Optional[float] = None,
        systolic_bp: Optional[int] = None,
        diastolic_bp: Optional[int] = None,
        pulse: Optional[int] = None,
        additional_vitals: Optional[Dict[str, str]] = None,
    ) -> VisitProtocol:
        """Record vitals. Values left as None keep what is already stored."""
        values = {
            "temperature": temperature,
            "systolic_bp": systolic_bp,
            "diastolic_bp": diastolic_bp,
            "pulse": pulse,
        }
        values = {key: value for key, value in values.items() if value is not None}
        if additional_vitals:
            current = self.get_protocol_for_visit(visit_id)
            merged = dict(current.additional_vitals or {}) if current else {}
            merged.update(additional_vitals)
            values["additional_vitals"] = merged
        return self.save_protocol(visit_id, **values)

    def apply_template(self, visit_id: str, template_id: str) -> VisitProtocol:
        """Fill the protocol from a cached template; blank template texts leave fields alone."""
        template = self.store.require(ProtocolTemplate, template_id)
        values = {"template_id": template.id}
        for source, target in TEMPLATE_FIELDS.items():
            text = getattr(template, source)
            if text and text.strip():
                values[target] = text
        logger.info("Applying template %s to visit %s", template.name, visit_id)
        return self.save_protocol(visit_id, **values)

    def delete_protocol(self, visit_id: str) -> DeleteDecision:
        protocol = self.get_protocol_for_visit(visit_id)
        if protocol is None:
            raise RecordNotFoundError(VisitProtocol.__name__, visit_id)
        return self._delete(protocol.id)

    def cache_protocols(self, protocols: Iterable) -> int:
        """Store server protocols whose visit is on the device."""
        rows = []
        for item in protocols:
            row = self.to_row(item)
            visit_id = row.get("visit_id")
            if not visit_id or self.store.get(Visit, visit_id) is None:
                logger.debug("Skipping protocol %s: visit %s not cached", row["id"], visit_id)
                continue
            if row.get("template_id") and self.store.get(ProtocolTemplate, row["template_id"]) is None:
                row["template_id"] = None
            rows.append(row)
        return self.store.cache_remote(VisitProtocol, rows)

    def observe_protocol(
        self, visit_id: str, callback: Callable[[Optional[VisitProtocol]], None]
    ) -> Callable[[], None]:
        return self.store.subscribe(
            VisitProtocol,
            lambda records: callback(next((p for p in records if p.visit_id == visit_id), None)),
        )

    def _find_any(self, visit_id: str) -> Optional[VisitProtocol]:
        # Tombstones included: the visit_id column is unique
        found = self.store.query(VisitProtocol, VisitProtocol.visit_id == visit_id, include_deleted=True)
        return found[0] if found else None
