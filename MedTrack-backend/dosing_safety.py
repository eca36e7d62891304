# dosing_safety.py
"""
Dosing safety verdict: may this dose be logged right now?
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import settings
from database import Medication, MedicationStatus, MealType, ActivityType, ActivityPriority, User
from dose_gate import can_take_medication_now
from exceptions import ConcurrentUpdateError, DoseNotPermittedError, MedicationNotFoundError, ValidationError
from medication_service import (
    apply_dose_update, append_activity_event, find_latest_dose_event,
    find_medication_by_id, find_meal_time_config,
)
from medication_timing import check_timing_window
from models import DoseLogResponse, SafetyVerdict
from timezone_utils import Clock, system_clock, to_local, to_utc

logger = logging.getLogger(__name__)

SAFE_REASON = "Safe to take"
DOSE_METHODS = ("manual", "barcode_scan", "reminder")


class DosingSafetyValidator:
    """Individual dosing checks, each returning (passed, detail)"""

    # Primary reason reported for the first failing check, in this order
    CHECK_ORDER = ("interval", "timing", "expiry", "status", "stock")
    FAILURE_REASONS = {
        "interval": "Too soon for next dose",
        "expiry": "Medication expired",
        "status": "Medication not active",
        "stock": "No medication remaining",
    }

    @classmethod
    def check_expiry(cls, medication: Medication, clock: Clock = system_clock) -> Tuple[bool, str]:
        if to_utc(clock()) >= to_utc(medication.expiry_date):
            expired_on = to_local(medication.expiry_date)
            return False, f"Medication expired on {expired_on:%a %b %d %Y}"
        return True, "Not expired"

    @classmethod
    def check_status(cls, medication: Medication) -> Tuple[bool, str]:
        status = MedicationStatus(medication.status)
        if status != MedicationStatus.ACTIVE:
            return False, f"This medication is currently {status.value}"
        return True, "Active"

    @classmethod
    def check_stock(cls, medication: Medication) -> Tuple[bool, str]:
        if medication.remaining_quantity <= 0:
            return False, "No doses remaining - please contact your caregiver"
        return True, f"{medication.remaining_quantity} doses remaining"


def build_safety_verdict(
    medication: Medication,
    last_taken: Optional[datetime],
    meal_times: Optional[Dict[MealType, str]],
    override: bool = False,
    clock: Clock = system_clock,
    current_time: Optional[str] = None
) -> SafetyVerdict:
    """
    Run every check and combine them. All failures become warnings; the first
    one in CHECK_ORDER is the primary reason. override accepts regardless.
    """
    dose_check = can_take_medication_now(last_taken, medication.frequency, clock)
    timing_check = check_timing_window(
        medication.frequency, medication.timing_relation, meal_times, current_time, clock
    )
    expiry_ok, expiry_detail = DosingSafetyValidator.check_expiry(medication, clock)
    status_ok, status_detail = DosingSafetyValidator.check_status(medication)
    stock_ok, stock_detail = DosingSafetyValidator.check_stock(medication)

    results = {
        "interval": (dose_check.can_take, f"Next dose available in {dose_check.hours_remaining} hours"),
        "timing": (timing_check.can_take, timing_check.reason),
        "expiry": (expiry_ok, expiry_detail),
        "status": (status_ok, status_detail),
        "stock": (stock_ok, stock_detail),
    }

    reason = None
    warnings: List[str] = []
    for name in DosingSafetyValidator.CHECK_ORDER:
        passed, detail = results[name]
        if passed:
            continue
        if reason is None:
            reason = DosingSafetyValidator.FAILURE_REASONS.get(name, detail)
        warnings.append(detail)

    all_passed = reason is None

    return SafetyVerdict(
        can_take=bool(override) or all_passed,
        reason=reason or SAFE_REASON,
        warnings=warnings,
        overridden=bool(override),
        checks={name: passed for name, (passed, _) in results.items()},
        last_taken=to_local(last_taken) if last_taken else None,
        next_dose_time=dose_check.next_dose_time,
        hours_remaining=dose_check.hours_remaining,
        is_expired=not expiry_ok,
        timing_relation=medication.timing_relation,
        current_windows=timing_check.current_windows,
        next_window=timing_check.next_window,
        time_until_next_window=timing_check.time_until_next_window,
    )


def get_last_dose_time(db: Session, medication: Medication) -> Optional[datetime]:
    """Last dose from the activity log; medication.last_taken is only a cache"""
    event = find_latest_dose_event(db, medication.patient_id, medication.id)
    return to_utc(event.created_at) if event else None


def evaluate_dosing_safety(
    db: Session,
    medication: Medication,
    override: bool = False,
    clock: Clock = system_clock
) -> SafetyVerdict:
    last_taken = get_last_dose_time(db, medication)
    meal_times = find_meal_time_config(db, medication.patient_id)
    verdict = build_safety_verdict(medication, last_taken, meal_times, override, clock)

    logger.info(
        f"Safety check for {medication.name}: can_take={verdict.can_take} reason='{verdict.reason}' checks={verdict.checks}",
        extra={"patient_id": medication.patient_id, "medication_id": medication.id}
    )
    return verdict


def _display_name(user: User) -> str:
    return user.full_name or user.username


def log_medication_taken(
    db: Session,
    medication_id: str,
    patient: User,
    override: bool = False,
    notes: Optional[str] = None,
    method: str = "manual",
    clock: Clock = system_clock
) -> DoseLogResponse:
    """
    Evaluate and, when accepted, record a dose. The stock update is a
    compare-and-swap; losing a race re-reads the medication and evaluates again.
    """
    if method not in DOSE_METHODS:
        raise ValidationError(f"Invalid dose method '{method}': must be one of {list(DOSE_METHODS)}")

    retries = settings.dose_update_retries

    for attempt in range(1, retries + 1):
        medication = find_medication_by_id(db, medication_id)
        if not medication or medication.patient_id != patient.id:
            raise MedicationNotFoundError("Medication not found", {"medication_id": medication_id})

        verdict = evaluate_dosing_safety(db, medication, override, clock)

        if not verdict.can_take:
            if settings.log_rejected_dose_attempts:
                append_activity_event(
                    db,
                    ActivityType.DOSE_BLOCKED,
                    patient.id,
                    f"{_display_name(patient)} tried to take {medication.name} ({verdict.reason})",
                    priority=ActivityPriority.MEDIUM,
                    medication=medication,
                    metadata={"safety_reason": verdict.reason, "warnings": verdict.warnings, "method": method},
                    created_at=clock(),
                )
                db.commit()
            raise DoseNotPermittedError(verdict)

        taken_at = clock()
        seen_remaining = medication.remaining_quantity
        seen_status = MedicationStatus(medication.status)
        new_remaining = max(0, seen_remaining - 1)
        new_status = MedicationStatus.COMPLETED if new_remaining == 0 else seen_status

        try:
            apply_dose_update(db, medication, seen_remaining, seen_status, new_remaining, new_status, taken_at)
        except ConcurrentUpdateError:
            logger.warning(
                f"Concurrent update on medication {medication_id} (attempt {attempt}/{retries})",
                extra={"patient_id": patient.id, "medication_id": medication_id}
            )
            if attempt == retries:
                raise
            continue

        message = f"{_display_name(patient)} took {medication.name}"
        if override:
            message += f" (OVERRIDE - {verdict.reason})"

        append_activity_event(
            db,
            ActivityType.DOSE_TAKEN,
            patient.id,
            message,
            priority=ActivityPriority.MEDIUM if override else ActivityPriority.LOW,
            medication=medication,
            metadata={
                "dose_taken": taken_at.isoformat(),
                "remaining_quantity": new_remaining,
                "was_overridden": bool(override),
                "safety_reason": verdict.reason,
                "warnings": verdict.warnings,
                "notes": notes,
                "method": method,
            },
            created_at=taken_at,
        )

        if 0 < new_remaining <= settings.low_stock_threshold:
            append_activity_event(
                db,
                ActivityType.LOW_STOCK,
                patient.id,
                f"{medication.name} is running low ({new_remaining} doses left)",
                priority=ActivityPriority.HIGH,
                medication=medication,
                metadata={"stock_level": new_remaining},
                created_at=taken_at,
            )

        db.commit()
        db.refresh(medication)

        logger.info(
            f"Dose logged for {medication.name}: remaining={medication.remaining_quantity} override={bool(override)}",
            extra={"patient_id": patient.id, "medication_id": medication.id}
        )

        return DoseLogResponse(
            medication_id=medication.id,
            medication_name=medication.name,
            taken_at=to_local(taken_at),
            remaining_quantity=medication.remaining_quantity,
            status=medication.status,
            days_left=medication.days_left,
            was_overridden=bool(override),
            safety=verdict,
        )
