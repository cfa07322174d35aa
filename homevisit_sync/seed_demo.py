"""
Demo data seeder for the home-visit sync store.

Caches three protocol templates plus a demo patient and today's visit for
that patient, all as already-synced server records, so the offline
walkthrough (edit, protocol, sync) works immediately after a fresh start.

This seeder is idempotent; it is safe to call on every startup.
"""
import logging
from datetime import date, datetime, time
from typing import Optional

from .models.base import Base, engine
from .models.patient import Gender, Patient
from .models.visit import Visit, VisitStatus
from .repositories.patients import PatientRepository
from .repositories.templates import TemplateRepository
from .repositories.visits import VisitRepository
from .services.record_store import LocalRecordStore

logger = logging.getLogger(__name__)

DEMO_PATIENT_ID = "demo-patient-1"
DEMO_VISIT_ID = "demo-visit-1"
DEMO_STAFF_ID = "demo-staff-1"

DEMO_TEMPLATES = [
    {
        "id": "template1",
        "name": "Acute respiratory infection",
        "description": "Template for acute respiratory viral infections",
        "complaints_template": "Fever, headache, sore throat, runny nose, general weakness",
        "anamnesis_template": "Acute onset ... days ago with the complaints above",
        "objective_status_template": (
            "Satisfactory condition. Skin of normal colour. Pharynx hyperaemic. "
            "Tonsils not enlarged. Vesicular breathing, no rales. Heart sounds clear, rhythmic."
        ),
        "recommendations_template": (
            "Plenty of warm fluids. Bed rest. Paracetamol 500 mg above 38.5C. "
            "Monitor temperature. Call the doctor if condition worsens."
        ),
        "required_vitals": ["temperature", "pulse", "blood_pressure"],
    },
    {
        "id": "template2",
        "name": "Hypertension",
        "description": "Template for hypertension follow-up",
        "complaints_template": "Headache, dizziness, raised blood pressure",
        "anamnesis_template": "Hypertensive for ... years. Takes antihypertensive medication regularly.",
        "objective_status_template": (
            "Satisfactory condition. Vesicular breathing, no rales. "
            "Heart sounds rhythmic, accent of the second tone over the aorta."
        ),
        "recommendations_template": (
            "Continue antihypertensive therapy. Check blood pressure morning and evening. "
            "Limit salt intake."
        ),
        "required_vitals": ["blood_pressure", "pulse"],
    },
    {
        "id": "template3",
        "name": "Newborn home visit",
        "description": "Template for the newborn patronage visit",
        "complaints_template": "No complaints",
        "anamnesis_template": "Born at ... weeks. Birth weight ... g, length ... cm.",
        "objective_status_template": (
            "Satisfactory condition. Skin clean, physiological colour. "
            "Anterior fontanelle ... cm, not tense. Puerile breathing, no rales."
        ),
        "recommendations_template": (
            "Breastfeeding on demand. Umbilical care. Daily walks outdoors. "
            "Clinic visit in ... days."
        ),
        "required_vitals": ["temperature", "weight", "height"],
    },
]


def seed_demo_data(store: Optional[LocalRecordStore] = None, today: Optional[date] = None) -> None:
    """Cache demo templates, patient and visit if they are not there yet."""
    if store is None:
        # Ensure tables exist (no-op when already created by main.py)
        Base.metadata.create_all(bind=engine)
        store = LocalRecordStore()

    _seed_templates(store)
    _seed_patient(store)
    _seed_visit(store, today or date.today())


# ── helpers ──────────────────────────────────────────────────────────────────

def _seed_templates(store: LocalRecordStore) -> None:
    repo = TemplateRepository(store)
    missing = [t for t in DEMO_TEMPLATES if repo.get_template(t["id"]) is None]
    if missing:
        repo.cache_templates(missing)
        logger.info("[seed] Cached %d demo protocol template(s)", len(missing))


def _seed_patient(store: LocalRecordStore) -> None:
    if store.get(Patient, DEMO_PATIENT_ID) is not None:
        return
    PatientRepository(store).cache_patients([{
        "id": DEMO_PATIENT_ID,
        "fullName": "John Demo",
        "dateOfBirth": "1960-06-15",
        "age": 66,
        "gender": Gender.MALE,
        "address": "1 Demo Street, Apt 4",
        "phoneNumber": "+1 555 0100",
        "policyNumber": "DEMO-POLICY-001",
        "allergies": ["penicillin"],
        "chronicConditions": ["hypertension"],
    }])
    logger.info("[seed] Cached demo patient %s", DEMO_PATIENT_ID)


def _seed_visit(store: LocalRecordStore, today: date) -> None:
    if store.get(Visit, DEMO_VISIT_ID) is not None:
        return
    VisitRepository(store).cache_visits([{
        "id": DEMO_VISIT_ID,
        "patientId": DEMO_PATIENT_ID,
        "scheduledTime": datetime.combine(today, time(10, 0)).isoformat(),
        "status": VisitStatus.PLANNED,
        "address": "1 Demo Street, Apt 4",
        "reasonForVisit": "Blood pressure check",
        "assignedStaffId": DEMO_STAFF_ID,
        "assignedStaffName": "Demo Nurse",
    }])
    logger.info("[seed] Cached demo visit %s", DEMO_VISIT_ID)
