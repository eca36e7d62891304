# medication_service.py
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import (
    Medication, MealTime, Activity, MealType, MedicationStatus,
    ActivityType, ActivityPriority,
)
from exceptions import BarcodeConflictError, ConcurrentUpdateError, ValidationError
from medication_timing import time_to_minutes, minutes_to_time
from models import MealTimeEntry

logger = logging.getLogger(__name__)

REQUIRED_MEALS = (MealType.BREAKFAST, MealType.LUNCH, MealType.DINNER)

DEFAULT_MEAL_TIMES = [
    {"meal_id": MealType.BREAKFAST, "name": "Breakfast", "time": "08:00", "enabled": True, "is_optional": False},
    {"meal_id": MealType.LUNCH, "name": "Lunch", "time": "12:30", "enabled": True, "is_optional": False},
    {"meal_id": MealType.DINNER, "name": "Dinner", "time": "19:00", "enabled": True, "is_optional": False},
    {"meal_id": MealType.SNACK, "name": "Snack", "time": "15:30", "enabled": False, "is_optional": True},
]

# Medications

def find_medication_by_id(db: Session, medication_id: str) -> Optional[Medication]:
    return db.query(Medication).filter(Medication.id == medication_id).first()

def find_medication_by_barcode(db: Session, code: str) -> Optional[Medication]:
    return db.query(Medication).filter(Medication.barcode_data == code).first()

def barcode_in_use(db: Session, code: str, exclude_medication_id: Optional[str] = None) -> bool:
    """True when a medication other than exclude_medication_id already holds code"""
    query = db.query(Medication.id).filter(Medication.barcode_data == code)
    if exclude_medication_id is not None:
        query = query.filter(Medication.id != exclude_medication_id)
    return query.first() is not None

def get_patient_medications(db: Session, patient_id: int) -> List[Medication]:
    return db.query(Medication).filter(
        Medication.patient_id == patient_id
    ).order_by(Medication.created_at.desc()).all()

def get_caregiver_medications(db: Session, caregiver_id: int) -> List[Medication]:
    return db.query(Medication).filter(
        Medication.caregiver_id == caregiver_id
    ).order_by(Medication.created_at.desc()).all()

def save_medication(db: Session, medication: Medication) -> Medication:
    """Commit a medication; a barcode uniqueness violation becomes BarcodeConflictError"""
    db.add(medication)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if "barcode_data" in str(e.orig):
            raise BarcodeConflictError(
                "Barcode already taken by another medication",
                {"barcode_data": medication.barcode_data}
            ) from e
        raise
    db.refresh(medication)
    return medication

def apply_dose_update(
    db: Session,
    medication: Medication,
    expected_remaining: int,
    expected_status: MedicationStatus,
    new_remaining: int,
    new_status: MedicationStatus,
    taken_at: datetime
) -> None:
    """
    Compare-and-swap the stock fields. Matches only if the row still holds the
    quantity and status the safety decision was made against. Not committed.
    """
    result = db.execute(
        update(Medication)
        .where(
            Medication.id == medication.id,
            Medication.remaining_quantity == expected_remaining,
            Medication.status == expected_status,
        )
        .values(
            remaining_quantity=new_remaining,
            status=new_status,
            last_taken=taken_at,
            updated_at=taken_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConcurrentUpdateError(
            "Medication was updated by another request",
            {"medication_id": medication.id}
        )

# Activity log

def find_latest_dose_event(db: Session, patient_id: int, medication_id: str) -> Optional[Activity]:
    return db.query(Activity).filter(
        Activity.patient_id == patient_id,
        Activity.medication_id == medication_id,
        Activity.type == ActivityType.DOSE_TAKEN
    ).order_by(Activity.created_at.desc(), Activity.id.desc()).first()

def append_activity_event(
    db: Session,
    activity_type: ActivityType,
    patient_id: int,
    message: str,
    priority: ActivityPriority = ActivityPriority.LOW,
    medication: Optional[Medication] = None,
    caregiver_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None
) -> Activity:
    """Stage an activity row; the caller commits it together with its own writes"""
    activity = Activity(
        type=activity_type,
        patient_id=patient_id,
        caregiver_id=caregiver_id if caregiver_id is not None else (medication.caregiver_id if medication else None),
        medication_id=medication.id if medication else None,
        message=message[:500],
        priority=priority,
        event_metadata=metadata or {},
    )
    if created_at is not None:
        activity.created_at = created_at
    db.add(activity)
    db.flush()
    return activity

def get_recent_activities(db: Session, patient_id: int, limit: int = 20) -> List[Activity]:
    return db.query(Activity).filter(
        Activity.patient_id == patient_id
    ).order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit).all()

def mark_activity_read(db: Session, activity_id: int, patient_id: int) -> bool:
    activity = db.query(Activity).filter(
        Activity.id == activity_id,
        Activity.patient_id == patient_id
    ).first()
    if not activity:
        return False
    activity.is_read = True
    db.commit()
    return True

def mark_all_activities_read(db: Session, patient_id: int) -> int:
    updated = db.query(Activity).filter(
        Activity.patient_id == patient_id,
        Activity.is_read.is_(False)
    ).update({Activity.is_read: True}, synchronize_session=False)
    db.commit()
    return updated

def get_caregiver_activities(
    db: Session,
    caregiver_id: int,
    limit: int = 50,
    activity_type: Optional[ActivityType] = None,
    is_read: Optional[bool] = None
) -> List[Activity]:
    """Newest first feed of events on medications this caregiver manages"""
    query = db.query(Activity).filter(Activity.caregiver_id == caregiver_id)
    if activity_type is not None:
        query = query.filter(Activity.type == activity_type)
    if is_read is not None:
        query = query.filter(Activity.is_read.is_(is_read))
    return query.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit).all()

def count_unread_caregiver_activities(db: Session, caregiver_id: int) -> int:
    return db.query(Activity).filter(
        Activity.caregiver_id == caregiver_id,
        Activity.is_read.is_(False)
    ).count()

def count_unread_alerts(db: Session, patient_id: int) -> int:
    return db.query(Activity).filter(
        Activity.patient_id == patient_id,
        Activity.priority.in_([ActivityPriority.HIGH, ActivityPriority.CRITICAL]),
        Activity.is_read.is_(False)
    ).count()

def mark_caregiver_activity_read(db: Session, activity_id: int, caregiver_id: int) -> bool:
    activity = db.query(Activity).filter(
        Activity.id == activity_id,
        Activity.caregiver_id == caregiver_id
    ).first()
    if not activity:
        return False
    activity.is_read = True
    db.commit()
    return True

def mark_all_caregiver_activities_read(db: Session, caregiver_id: int) -> int:
    updated = db.query(Activity).filter(
        Activity.caregiver_id == caregiver_id,
        Activity.is_read.is_(False)
    ).update({Activity.is_read: True}, synchronize_session=False)
    db.commit()
    return updated

# Meal times

def find_meal_time_config(db: Session, patient_id: int) -> Optional[Dict[MealType, str]]:
    """Configured meal times, or None when the patient has never had any"""
    rows = db.query(MealTime).filter(MealTime.patient_id == patient_id).all()
    if not rows:
        return None
    return {row.meal_id: row.time for row in rows}

def get_or_create_meal_times(db: Session, patient_id: int) -> List[MealTime]:
    rows = db.query(MealTime).filter(MealTime.patient_id == patient_id).all()

    if not rows:
        rows = [MealTime(patient_id=patient_id, **meal) for meal in DEFAULT_MEAL_TIMES]
        db.add_all(rows)
        db.commit()
        logger.info(f"Created default meal times for patient {patient_id}", extra={"patient_id": patient_id})

    order = list(MealType)
    return sorted(rows, key=lambda row: order.index(row.meal_id))

def update_meal_times(db: Session, patient_id: int, updates: Dict[str, MealTimeEntry]) -> List[MealTime]:
    """Upsert meal times. Breakfast, lunch and dinner cannot be disabled."""
    parsed = {}
    for meal_id, entry in updates.items():
        try:
            meal_type = MealType(meal_id)
        except ValueError:
            raise ValidationError(f"Unknown meal '{meal_id}'")
        if meal_type in REQUIRED_MEALS and not entry.enabled:
            raise ValidationError(f"{meal_type.value.capitalize()} is required and cannot be disabled")
        parsed[meal_type] = MealTimeEntry(time=minutes_to_time(time_to_minutes(entry.time)), enabled=entry.enabled)

    existing = {row.meal_id: row for row in get_or_create_meal_times(db, patient_id)}

    for meal_type, entry in parsed.items():
        row = existing.get(meal_type)
        if row is None:
            row = MealTime(
                patient_id=patient_id,
                meal_id=meal_type,
                name=meal_type.value.capitalize(),
                is_optional=meal_type not in REQUIRED_MEALS,
            )
            db.add(row)
            existing[meal_type] = row
        row.time = entry.time
        row.enabled = entry.enabled

    db.commit()
    logger.info(f"Meal times updated for patient {patient_id}: {sorted(m.value for m in parsed)}")

    order = list(MealType)
    return sorted(existing.values(), key=lambda row: order.index(row.meal_id))
