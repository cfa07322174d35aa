"""
Wire DTOs exchanged with the remote authority.

The backend speaks camelCase JSON; these models map it to the snake_case
column names used by the local store.
"""
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_TIMESTAMP_FIELDS = {"created_at", "updated_at"}


class RemoteDto(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record, include_id: bool = True):
        data = {name: getattr(record, name, None) for name in cls.model_fields}
        if not include_id:
            data["id"] = None
        return cls.model_validate(data)

    def to_payload(self) -> dict:
        exclude = set(_TIMESTAMP_FIELDS)
        if self.id is None:
            exclude.add("id")
        return self.model_dump(by_alias=True, mode="json", exclude=exclude)

    def canonical_fields(self) -> dict:
        """Domain values the server actually returned, keyed by column name."""
        return {
            name: to_naive_utc(getattr(self, name))
            for name in self.model_fields_set
            if name not in _TIMESTAMP_FIELDS and name != "id"
        }

    @property
    def server_updated_at(self) -> Optional[datetime]:
        return to_naive_utc(self.updated_at)


def to_naive_utc(value):
    """Store every datetime as naive UTC; other values pass through."""
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PatientDto(RemoteDto):
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None
    policy_number: Optional[str] = None
    allergies: Optional[List[str]] = None
    chronic_conditions: Optional[List[str]] = None


class VisitDto(RemoteDto):
    patient_id: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    status: Optional[str] = None
    address: Optional[str] = None
    reason_for_visit: Optional[str] = None
    notes: Optional[str] = None
    assigned_staff_id: Optional[str] = None
    assigned_staff_name: Optional[str] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    is_from_request: Optional[bool] = None
    original_request_id: Optional[str] = None


class VisitProtocolDto(RemoteDto):
    visit_id: Optional[str] = None
    template_id: Optional[str] = None
    complaints: Optional[str] = None
    anamnesis: Optional[str] = None
    objective_status: Optional[str] = None
    diagnosis: Optional[str] = None
    diagnosis_code: Optional[str] = None
    recommendations: Optional[str] = None
    temperature: Optional[float] = None
    systolic_bp: Optional[int] = Field(None, alias="systolicBP")
    diastolic_bp: Optional[int] = Field(None, alias="diastolicBP")
    pulse: Optional[int] = None
    additional_vitals: Optional[Dict[str, str]] = None


class ProtocolTemplateDto(RemoteDto):
    name: Optional[str] = None
    description: Optional[str] = None
    complaints_template: Optional[str] = None
    anamnesis_template: Optional[str] = None
    objective_status_template: Optional[str] = None
    recommendations_template: Optional[str] = None
    required_vitals: Optional[List[str]] = None
