from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, List, Optional

from ..models.base import utcnow
from ..models.registry import EntityType
from ..models.visit import Visit, VisitStatus
from ..schemas import VisitDto
from ..services.dirty_tracker import DeleteDecision
from .base import OfflineRepository


class VisitRepository(OfflineRepository):
    model = Visit
    entity_type = EntityType.VISIT
    dto = VisitDto

    def add_unplanned_visit(
        self,
        patient_id: str,
        scheduled_time: datetime,
        address: str = "",
        reason_for_visit: str = "",
        notes: str = "",
        assigned_staff_id: Optional[str] = None,
        assigned_staff_name: Optional[str] = None,
    ) -> Visit:
        """Register a visit created on the device (not from the plan)."""
        if not patient_id:
            raise ValueError("A visit needs a patient")
        return self._create(
            patient_id=patient_id,
            scheduled_time=scheduled_time,
            status=VisitStatus.PLANNED,
            address=address,
            reason_for_visit=reason_for_visit,
            notes=notes,
            assigned_staff_id=assigned_staff_id,
            assigned_staff_name=assigned_staff_name,
            is_from_request=False,
        )

    def update_status(self, visit_id: str, status: str) -> Visit:
        if status not in VisitStatus.ALL:
            raise ValueError(f"Unknown visit status: {status}")
        return self._update(visit_id, status=status)

    def update_notes(self, visit_id: str, notes: str) -> Visit:
        return self._update(visit_id, notes=notes)

    def update_scheduled_time(self, visit_id: str, scheduled_time: datetime) -> Visit:
        return self._update(visit_id, scheduled_time=scheduled_time)

    def start_visit(self, visit_id: str, started_at: Optional[datetime] = None) -> Visit:
        return self._update(
            visit_id,
            status=VisitStatus.IN_PROGRESS,
            actual_start_time=started_at or utcnow(),
        )

    def complete_visit(self, visit_id: str, finished_at: Optional[datetime] = None) -> Visit:
        return self._update(
            visit_id,
            status=VisitStatus.COMPLETED,
            actual_end_time=finished_at or utcnow(),
        )

    def delete_visit(self, visit_id: str) -> DeleteDecision:
        return self._delete(visit_id)

    def get_visit(self, visit_id: str) -> Optional[Visit]:
        return self._get_live(visit_id)

    def visits_for_staff(self, staff_id: str) -> List[Visit]:
        return self.store.query(
            Visit, Visit.assigned_staff_id == staff_id, order_by=Visit.scheduled_time
        )

    def visits_for_date(self, day: date, staff_id: Optional[str] = None) -> List[Visit]:
        start = datetime.combine(day, time.min)
        criteria = [Visit.scheduled_time >= start, Visit.scheduled_time < start + timedelta(days=1)]
        if staff_id:
            criteria.append(Visit.assigned_staff_id == staff_id)
        return self.store.query(Visit, *criteria, order_by=Visit.scheduled_time)

    def visit_history_for_patient(self, patient_id: str) -> List[Visit]:
        """Most recent first."""
        return self.store.query(
            Visit, Visit.patient_id == patient_id, order_by=Visit.scheduled_time.desc()
        )

    def cache_visits(self, visits: Iterable) -> int:
        return self._cache(visits)

    def observe_visits(
        self, callback: Callable[[List[Visit]], None], staff_id: Optional[str] = None
    ) -> Callable[[], None]:
        if staff_id is None:
            return self._observe(callback)
        return self._observe(callback, lambda visit: visit.assigned_staff_id == staff_id)
