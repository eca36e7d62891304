# caregiver_service.py
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from barcode_utils import insert_with_barcode
from database import (
    User, UserRole, Medication, MedicationStatus, ActivityType, ActivityPriority, DosageUnit,
    TimingRelation, new_object_id,
)
from exceptions import MedicationNotFoundError, ValidationError
from medication_service import (
    append_activity_event, count_unread_alerts, find_medication_by_id, get_caregiver_medications,
    get_patient_medications,
)
from models import BarcodeEntry, MedicationCreate, PatientSummary, UserResponse
from timezone_utils import Clock, system_clock, to_utc

logger = logging.getLogger(__name__)

NOTIFICATION_TITLES = {
    ActivityType.DOSE_TAKEN: "Patient Took Medication",
    ActivityType.DOSE_BLOCKED: "Dose Attempt Blocked",
    ActivityType.LOW_STOCK: "Low Medication Stock",
    ActivityType.MEDICATION_ADDED: "New Medication Added",
    ActivityType.MEDICATION_REMOVED: "Medication Removed",
}


def get_linked_patient(db: Session, caregiver: User, patient_id: int) -> Optional[User]:
    return db.query(User).filter(
        User.id == patient_id,
        User.role == UserRole.PATIENT,
        User.caregiver_id == caregiver.id
    ).first()


def link_patient(db: Session, caregiver: User, email: str) -> User:
    """Attach an existing patient account that has no caregiver yet"""
    patient = db.query(User).filter(
        User.email == email,
        User.role == UserRole.PATIENT
    ).first()
    if not patient:
        raise ValidationError("No patient account registered with this email")
    if patient.caregiver_id is not None and patient.caregiver_id != caregiver.id:
        raise ValidationError("Patient is already linked to another caregiver")

    patient.caregiver_id = caregiver.id
    db.commit()
    db.refresh(patient)
    logger.info(f"Caregiver {caregiver.id} linked to patient {patient.id}", extra={"patient_id": patient.id})
    return patient


def create_medication(
    db: Session,
    caregiver: User,
    patient: User,
    data: MedicationCreate,
    clock: Clock = system_clock
) -> Medication:
    """Add a medication for a linked patient, assign its barcode and log it"""
    if to_utc(data.expiry_date) <= clock():
        raise ValidationError("Expiry date must be in the future")

    medication = Medication(
        id=new_object_id(),
        patient_id=patient.id,
        caregiver_id=caregiver.id,
        name=data.name.strip(),
        dosage=data.dosage,
        dosage_unit=data.dosage_unit,
        frequency=data.frequency,
        timing_relation=data.timing_relation,
        total_quantity=data.quantity,
        remaining_quantity=data.quantity,
        expiry_date=to_utc(data.expiry_date),
        instructions=data.instructions,
        status=MedicationStatus.ACTIVE,
    )
    insert_with_barcode(db, medication, clock)

    append_activity_event(
        db,
        ActivityType.MEDICATION_ADDED,
        patient.id,
        f"New medication {medication.name} added for {patient.full_name or patient.username}",
        priority=ActivityPriority.LOW,
        medication=medication,
        created_at=clock(),
    )
    db.commit()
    db.refresh(medication)

    logger.info(
        f"Medication created: {medication.name} with barcode {medication.barcode_data}",
        extra={"patient_id": patient.id, "medication_id": medication.id}
    )
    return medication


def set_medication_status(
    db: Session,
    caregiver: User,
    medication_id: str,
    status: MedicationStatus,
    clock: Clock = system_clock
) -> Medication:
    """Pause or resume a medication. Completed is reached only by running out."""
    medication = find_medication_by_id(db, medication_id)
    if not medication or medication.caregiver_id != caregiver.id:
        raise MedicationNotFoundError("Medication not found", {"medication_id": medication_id})

    current = MedicationStatus(medication.status)
    if status == current:
        return medication
    if status == MedicationStatus.COMPLETED:
        raise ValidationError("Medications are completed automatically when stock runs out")
    if current == MedicationStatus.COMPLETED:
        raise ValidationError("A completed medication cannot be resumed; add a new supply instead")

    medication.status = status
    activity_type = ActivityType.MEDICATION_PAUSED if status == MedicationStatus.PAUSED else ActivityType.MEDICATION_RESUMED
    verb = "paused" if status == MedicationStatus.PAUSED else "resumed"
    append_activity_event(
        db,
        activity_type,
        medication.patient_id,
        f"{medication.name} was {verb} by your caregiver",
        priority=ActivityPriority.MEDIUM,
        medication=medication,
        created_at=clock(),
    )
    db.commit()
    db.refresh(medication)
    logger.info(f"Medication {medication.id} {verb}", extra={"medication_id": medication.id})
    return medication


def delete_medication(
    db: Session,
    caregiver: User,
    medication_id: str,
    clock: Clock = system_clock
) -> None:
    """Remove a medication; its activity history stays without the link"""
    medication = find_medication_by_id(db, medication_id)
    if not medication or medication.caregiver_id != caregiver.id:
        raise MedicationNotFoundError("Medication not found", {"medication_id": medication_id})

    patient = medication.patient
    name = medication.name
    db.delete(medication)
    append_activity_event(
        db,
        ActivityType.MEDICATION_REMOVED,
        patient.id,
        f"Medication {name} removed for {patient.full_name or patient.username}",
        priority=ActivityPriority.LOW,
        caregiver_id=caregiver.id,
        metadata={"medication_id": medication_id, "medication_name": name},
        created_at=clock(),
    )
    db.commit()
    logger.info(f"Medication {medication_id} deleted", extra={"patient_id": patient.id, "medication_id": medication_id})


def get_linked_patients(db: Session, caregiver: User) -> List[User]:
    return db.query(User).filter(
        User.role == UserRole.PATIENT,
        User.caregiver_id == caregiver.id
    ).order_by(User.id).all()


def summarize_patients(db: Session, caregiver: User) -> List[PatientSummary]:
    summaries = []
    for patient in get_linked_patients(db, caregiver):
        summaries.append(PatientSummary(
            **UserResponse.model_validate(patient).model_dump(),
            medications_count=len(get_patient_medications(db, patient.id)),
            unread_alerts=count_unread_alerts(db, patient.id),
        ))
    return summaries


def get_barcode_entries(db: Session, caregiver: User) -> List[BarcodeEntry]:
    """Printable code list for every medication the caregiver manages"""
    entries = []
    for medication in get_caregiver_medications(db, caregiver.id):
        patient = medication.patient
        entries.append(BarcodeEntry(
            id=medication.id,
            patient_id=medication.patient_id,
            patient_name=patient.full_name or patient.username,
            medication_name=medication.name,
            dosage=f"{medication.dosage} {DosageUnit(medication.dosage_unit).value}",
            frequency=f"{medication.frequency}x daily",
            timing_relation=TimingRelation(medication.timing_relation).value.replace("_", " "),
            barcode_data=medication.barcode_data,
            created_at=medication.created_at,
        ))
    return entries


def notification_title(activity_type: ActivityType) -> str:
    return NOTIFICATION_TITLES.get(ActivityType(activity_type), "Notification")
