from sqlalchemy import Column, String, Text, Float, Integer, ForeignKey, JSON
from .base import Base, TimestampMixin, generate_uuid
from .sync import SyncMixin
from .visit import Visit
from ..schemas import VisitProtocolDto


class ProtocolTemplate(Base, TimestampMixin):
    """Reference data pulled from the server. Never dirtied locally."""
    __tablename__ = "protocol_templates"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String(200), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    complaints_template = Column(Text, nullable=True)
    anamnesis_template = Column(Text, nullable=True)
    objective_status_template = Column(Text, nullable=True)
    recommendations_template = Column(Text, nullable=True)
    required_vitals = Column(JSON, nullable=False, default=list)


class ProtocolField:
    """Free-text protocol fields editable one at a time."""
    COMPLAINTS = "complaints"
    ANAMNESIS = "anamnesis"
    OBJECTIVE_STATUS = "objective_status"
    DIAGNOSIS = "diagnosis"
    DIAGNOSIS_CODE = "diagnosis_code"
    RECOMMENDATIONS = "recommendations"

    ALL = [COMPLAINTS, ANAMNESIS, OBJECTIVE_STATUS, DIAGNOSIS, DIAGNOSIS_CODE, RECOMMENDATIONS]


class VisitProtocol(Base, TimestampMixin, SyncMixin):
    __tablename__ = "visit_protocols"

    LOCAL_ID_KIND = "proto"
    SYNC_REFERENCES = {"visit_id": Visit}

    id = Column(String, primary_key=True)
    # Follows the visit through deletion and through a local->server id remap
    visit_id = Column(
        String,
        ForeignKey("visits.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    # Template is reference data: losing it must not take the protocol with it
    template_id = Column(
        String, ForeignKey("protocol_templates.id", ondelete="SET NULL"), nullable=True, index=True
    )

    complaints = Column(Text, nullable=True)
    anamnesis = Column(Text, nullable=True)
    objective_status = Column(Text, nullable=True)
    diagnosis = Column(Text, nullable=True)
    diagnosis_code = Column(String(20), nullable=True)  # ICD-10
    recommendations = Column(Text, nullable=True)

    # Vitals
    temperature = Column(Float, nullable=True)
    systolic_bp = Column(Integer, nullable=True)
    diastolic_bp = Column(Integer, nullable=True)
    pulse = Column(Integer, nullable=True)
    additional_vitals = Column(JSON, nullable=False, default=dict)

    def to_payload(self) -> dict:
        dto = VisitProtocolDto.from_record(self, include_id=not self.has_local_id)
        if not self.additional_vitals:
            dto.additional_vitals = None
        return dto.to_payload()
