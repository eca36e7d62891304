from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from auth import get_current_user, require_role
from barcode_utils import generate_barcode, resolve_barcode
from database import get_db, User as DBUser, UserRole
from dosing_safety import evaluate_dosing_safety, log_medication_taken
from exceptions import (
    ValidationError, BarcodeNotFoundError, MedicationNotFoundError, DoseNotPermittedError,
    ConcurrentUpdateError, BarcodeGenerationError, validation_exception, not_found_exception,
    conflict_exception, forbidden_exception, internal_server_exception,
)
from medication_service import find_medication_by_id
from models import BarcodeScanResponse, DoseLogRequest, DoseLogResponse, MedicationResponse
from timezone_utils import Clock, get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/barcode", tags=["barcode"])


def can_access(user: DBUser, medication) -> bool:
    return user.id in (medication.patient_id, medication.caregiver_id)


def scan_medication(db: Session, code: str, user: DBUser):
    try:
        medication = resolve_barcode(db, code)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)
    except BarcodeNotFoundError as e:
        raise not_found_exception(e.message, e.details)

    if not can_access(user, medication):
        logger.warning(f"User {user.id} scanned a barcode they cannot access", extra={"medication_id": medication.id})
        raise forbidden_exception("You do not have access to this medication.")
    return medication


@router.get("/scan/{code}", response_model=BarcodeScanResponse)
def scan_barcode(
    code: str,
    current_user: DBUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Resolve a scanned code and report whether the dose may be taken now"""
    medication = scan_medication(db, code, current_user)
    try:
        verdict = evaluate_dosing_safety(db, medication, clock=clock)
    except ValidationError as e:
        raise validation_exception(e.message, e.details)

    return BarcodeScanResponse(
        medication=MedicationResponse.model_validate(medication),
        safety=verdict
    )


@router.post("/scan/{code}/log", response_model=DoseLogResponse)
def log_scanned_dose(
    code: str,
    request: DoseLogRequest,
    current_user: DBUser = Depends(require_role(UserRole.PATIENT)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    medication = scan_medication(db, code, current_user)
    try:
        return log_medication_taken(
            db,
            medication.id,
            current_user,
            override=request.override,
            notes=request.notes,
            method="barcode_scan",
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


@router.post("/medications/{medication_id}/regenerate", response_model=MedicationResponse)
def regenerate_barcode(
    medication_id: str,
    current_user: DBUser = Depends(require_role(UserRole.CAREGIVER)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    medication = find_medication_by_id(db, medication_id)
    if not medication or medication.caregiver_id != current_user.id:
        raise not_found_exception("Medication not found", {"medication_id": medication_id})

    try:
        generate_barcode(db, medication.id, clock)
    except BarcodeGenerationError as e:
        raise internal_server_exception(e.message)

    db.refresh(medication)
    return medication
