from typing import Callable, Iterable, List, Optional

from ..models.patient import Patient
from ..models.registry import EntityType
from ..schemas import PatientDto
from ..services.dirty_tracker import DeleteDecision
from .base import OfflineRepository


class PatientRepository(OfflineRepository):
    model = Patient
    entity_type = EntityType.PATIENT
    dto = PatientDto

    def create_patient(self, full_name: str, **fields) -> Patient:
        if not full_name or not full_name.strip():
            raise ValueError("Patient name is required")
        return self._create(full_name=full_name.strip(), **fields)

    def update_profile(self, patient_id: str, **fields) -> Patient:
        """Edit demographic/contact fields. Only the given fields change."""
        if "full_name" in fields and not (fields["full_name"] or "").strip():
            raise ValueError("Patient name cannot be blank")
        return self._update(patient_id, **fields)

    def delete_patient(self, patient_id: str) -> DeleteDecision:
        return self._delete(patient_id)

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self._get_live(patient_id)

    def list_patients(self, search: Optional[str] = None) -> List[Patient]:
        criteria = []
        if search:
            criteria.append(Patient.full_name.ilike(f"%{search}%"))
        return self.store.query(Patient, *criteria, order_by=Patient.full_name)

    def cache_patients(self, patients: Iterable) -> int:
        return self._cache(patients)

    def observe_patients(self, callback: Callable[[List[Patient]], None]) -> Callable[[], None]:
        return self._observe(callback)

    def observe_patient(self, patient_id: str, callback: Callable[[Optional[Patient]], None]) -> Callable[[], None]:
        return self.store.subscribe(
            Patient,
            lambda records: callback(next((p for p in records if p.id == patient_id), None)),
        )
