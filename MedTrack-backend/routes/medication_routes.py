from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
import logging

from auth import require_role
from caregiver_service import (
    create_medication, delete_medication, get_barcode_entries, get_linked_patient, link_patient,
    notification_title, set_medication_status, summarize_patients,
)
from database import get_db, User as DBUser, UserRole, ActivityType
from dosing_safety import evaluate_dosing_safety, log_medication_taken
from exceptions import (
    ValidationError, MedicationNotFoundError, DoseNotPermittedError, ConcurrentUpdateError,
    BarcodeGenerationError, validation_exception, not_found_exception, conflict_exception,
    internal_server_exception,
)
from medication_service import (
    find_medication_by_id, get_patient_medications, get_or_create_meal_times, update_meal_times,
    get_recent_activities, mark_activity_read, mark_all_activities_read, get_caregiver_activities,
    count_unread_caregiver_activities, mark_caregiver_activity_read, mark_all_caregiver_activities_read,
)
from models import (
    MedicationCreate, MedicationResponse, MedicationStatusUpdate, PatientLinkRequest, UserResponse,
    DoseLogRequest, DoseLogResponse, SafetyVerdict, MealTimeEntry, MealTimeResponse,
    ActivityResponse, ActivityFeedResponse, BarcodeEntry, CaregiverFeedResponse,
    CaregiverNotificationResponse, PatientDetailResponse, PatientSummary,
)
from timezone_utils import Clock, get_clock, format_time_ago, to_local

logger = logging.getLogger(__name__)

patient_router = APIRouter(prefix="/patient", tags=["patient"])
caregiver_router = APIRouter(prefix="/caregiver", tags=["caregiver"])

current_patient = require_role(UserRole.PATIENT)
current_caregiver = require_role(UserRole.CAREGIVER)


def to_12_hour(time_24: str) -> str:
    hours, minutes = (int(part) for part in time_24.split(":"))
    period = "PM" if hours >= 12 else "AM"
    return f"{hours % 12 or 12}:{minutes:02d} {period}"


def get_patient_medication(db: Session, medication_id: str, patient: DBUser):
    medication = find_medication_by_id(db, medication_id)
    if not medication or medication.patient_id != patient.id:
        raise not_found_exception("Medication not found", {"medication_id": medication_id})
    return medication


def to_activity_response(activity, clock: Clock) -> ActivityResponse:
    return ActivityResponse(
        id=activity.id,
        type=activity.type,
        medication_id=activity.medication_id,
        medication_name=activity.medication.name if activity.medication else None,
        message=activity.message,
        priority=activity.priority,
        is_read=activity.is_read,
        time_ago=format_time_ago(activity.created_at, clock),
        created_at=to_local(activity.created_at),
        metadata=activity.event_metadata or {}
    )


# PATIENT ENDPOINTS

@patient_router.get("/medications", response_model=List[MedicationResponse])
def list_medications(
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    return get_patient_medications(db, current_user.id)


@patient_router.get("/medications/{medication_id}", response_model=MedicationResponse)
def get_medication_details(
    medication_id: str,
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    return get_patient_medication(db, medication_id, current_user)


@patient_router.get("/medications/{medication_id}/timing-check", response_model=SafetyVerdict)
def check_medication_timing(
    medication_id: str,
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Full safety verdict for taking this medication now, without logging anything"""
    medication = get_patient_medication(db, medication_id, current_user)
    try:
        return evaluate_dosing_safety(db, medication, clock=clock)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)


@patient_router.post("/medications/{medication_id}/log", response_model=DoseLogResponse)
def log_dose(
    medication_id: str,
    request: DoseLogRequest,
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """
    Log a dose. Rejected doses return 400 with the full verdict so the client
    can show the warnings and offer the override path.
    """
    try:
        return log_medication_taken(
            db,
            medication_id,
            current_user,
            override=request.override,
            notes=request.notes,
            method="manual",
            clock=clock
        )
    except MedicationNotFoundError as e:
        raise not_found_exception(e.message, e.details)
    except DoseNotPermittedError as e:
        raise validation_exception(e.message, e.details)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)
    except ConcurrentUpdateError as e:
        raise conflict_exception("Medication was updated concurrently, please try again", e.details)


@patient_router.get("/meal-times", response_model=List[MealTimeResponse])
def get_meal_times(
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    meals = get_or_create_meal_times(db, current_user.id)
    return [
        MealTimeResponse(
            id=meal.meal_id,
            name=meal.name,
            time=meal.time,
            display_time=to_12_hour(meal.time),
            enabled=meal.enabled
        )
        for meal in meals
    ]


@patient_router.put("/meal-times", response_model=List[MealTimeResponse])
def put_meal_times(
    meal_times: Dict[str, MealTimeEntry],
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    try:
        meals = update_meal_times(db, current_user.id, meal_times)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)

    return [
        MealTimeResponse(
            id=meal.meal_id,
            name=meal.name,
            time=meal.time,
            display_time=to_12_hour(meal.time),
            enabled=meal.enabled
        )
        for meal in meals
    ]


@patient_router.get("/activities", response_model=ActivityFeedResponse)
def get_activities(
    limit: int = 20,
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    activities = get_recent_activities(db, current_user.id, min(max(limit, 1), 100))
    feed = [to_activity_response(activity, clock) for activity in activities]
    return ActivityFeedResponse(
        activities=feed,
        unread_count=sum(1 for activity in activities if not activity.is_read)
    )


@patient_router.patch("/activities/read-all")
def read_all_activities(
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    updated = mark_all_activities_read(db, current_user.id)
    return {"message": "All notifications marked as read", "updated": updated}


@patient_router.patch("/activities/{activity_id}/read")
def read_activity(
    activity_id: int,
    current_user: DBUser = Depends(current_patient),
    db: Session = Depends(get_db)
):
    if not mark_activity_read(db, activity_id, current_user.id):
        raise not_found_exception("Notification not found", {"activity_id": activity_id})
    return {"message": "Notification marked as read"}


# CAREGIVER ENDPOINTS

@caregiver_router.post("/patients", response_model=UserResponse)
def add_patient(
    request: PatientLinkRequest,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    try:
        return link_patient(db, current_user, request.email)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)


@caregiver_router.post("/patients/{patient_id}/medications", response_model=MedicationResponse, status_code=201)
def add_medication(
    patient_id: int,
    medication: MedicationCreate,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    patient = get_linked_patient(db, current_user, patient_id)
    if not patient:
        raise not_found_exception("Patient not found or unauthorized access", {"patient_id": patient_id})

    try:
        return create_medication(db, current_user, patient, medication, clock)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)
    except BarcodeGenerationError as e:
        raise internal_server_exception(f"{e.message} for new medication")


@caregiver_router.patch("/medications/{medication_id}/status", response_model=MedicationResponse)
def update_medication_status(
    medication_id: str,
    request: MedicationStatusUpdate,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    try:
        return set_medication_status(db, current_user, medication_id, request.status, clock)
    except MedicationNotFoundError as e:
        raise not_found_exception(e.message, e.details)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)


@caregiver_router.get("/patients", response_model=List[PatientSummary])
def list_patients(
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    return summarize_patients(db, current_user)


@caregiver_router.get("/patients/{patient_id}", response_model=PatientDetailResponse)
def get_patient_details(
    patient_id: int,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    patient = get_linked_patient(db, current_user, patient_id)
    if not patient:
        raise not_found_exception("Patient not found or unauthorized access", {"patient_id": patient_id})

    return PatientDetailResponse(
        patient=UserResponse.model_validate(patient),
        medications=[MedicationResponse.model_validate(m) for m in get_patient_medications(db, patient.id)]
    )


@caregiver_router.delete("/medications/{medication_id}")
def remove_medication(
    medication_id: str,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    try:
        delete_medication(db, current_user, medication_id, clock)
    except MedicationNotFoundError as e:
        raise not_found_exception(e.message, e.details)
    return {"message": "Medication deleted successfully"}


@caregiver_router.get("/barcodes", response_model=List[BarcodeEntry])
def list_barcodes(
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    return get_barcode_entries(db, current_user)


@caregiver_router.get("/notifications", response_model=CaregiverFeedResponse)
def get_notifications(
    type: Optional[ActivityType] = None,
    read: Optional[bool] = None,
    limit: int = 50,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    activities = get_caregiver_activities(db, current_user.id, min(max(limit, 1), 100), type, read)
    notifications = []
    for activity in activities:
        entry = to_activity_response(activity, clock)
        notifications.append(CaregiverNotificationResponse(
            **entry.model_dump(),
            title=notification_title(activity.type),
            patient_id=activity.patient_id,
            patient_name=(activity.patient.full_name or activity.patient.username) if activity.patient else None
        ))
    return CaregiverFeedResponse(
        notifications=notifications,
        unread_count=count_unread_caregiver_activities(db, current_user.id)
    )


@caregiver_router.get("/notifications/count")
def get_notification_count(
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    return {"unread_count": count_unread_caregiver_activities(db, current_user.id)}


@caregiver_router.patch("/notifications/read-all")
def read_all_notifications(
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    updated = mark_all_caregiver_activities_read(db, current_user.id)
    return {"message": "All notifications marked as read", "updated": updated}


@caregiver_router.patch("/notifications/{activity_id}/read")
def read_notification(
    activity_id: int,
    current_user: DBUser = Depends(current_caregiver),
    db: Session = Depends(get_db)
):
    if not mark_caregiver_activity_read(db, activity_id, current_user.id):
        raise not_found_exception("Notification not found", {"activity_id": activity_id})
    return {"message": "Notification marked as read"}
