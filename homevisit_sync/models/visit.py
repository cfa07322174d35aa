from sqlalchemy import Column, String, Text, Boolean, DateTime
from .base import Base, TimestampMixin
from .patient import Patient
from .sync import SyncMixin
from ..schemas import VisitDto


class VisitStatus:
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ALL = [PLANNED, IN_PROGRESS, COMPLETED, CANCELLED]


class Visit(Base, TimestampMixin, SyncMixin):
    __tablename__ = "visits"

    LOCAL_ID_KIND = "visit"
    # Patients are not always cached on the device, so no DB-level foreign key
    SYNC_REFERENCES = {"patient_id": Patient}

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False, index=True)
    scheduled_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=VisitStatus.PLANNED)
    address = Column(String(500), nullable=False, default="")
    reason_for_visit = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    assigned_staff_id = Column(String, nullable=True, index=True)
    assigned_staff_name = Column(String(200), nullable=True)

    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)

    # Link to the appointment request the visit was created from
    is_from_request = Column(Boolean, nullable=False, default=False)
    original_request_id = Column(String, nullable=True)

    def to_payload(self) -> dict:
        return VisitDto.from_record(self, include_id=not self.has_local_id).to_payload()
