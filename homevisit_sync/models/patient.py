from sqlalchemy import Column, String, Date, Integer, JSON
from .base import Base, TimestampMixin
from .sync import SyncMixin
from ..schemas import PatientDto


class Gender:
    MALE = "MALE"
    FEMALE = "FEMALE"
    UNKNOWN = "UNKNOWN"


class Patient(Base, TimestampMixin, SyncMixin):
    __tablename__ = "patients"

    LOCAL_ID_KIND = "patient"

    id = Column(String, primary_key=True)
    # PHI fields
    full_name = Column(String(200), nullable=False)
    date_of_birth = Column(Date, nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True, default=Gender.UNKNOWN)
    address = Column(String(500), nullable=False, default="")
    phone_number = Column(String(50), nullable=False, default="")
    policy_number = Column(String(50), nullable=False, default="")  # Insurance policy
    allergies = Column(JSON, nullable=True)
    chronic_conditions = Column(JSON, nullable=True)

    def to_payload(self) -> dict:
        return PatientDto.from_record(self, include_id=not self.has_local_id).to_payload()
