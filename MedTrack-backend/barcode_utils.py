# barcode_utils.py
"""
Short scannable medication codes.

Format: MT + last 8 characters of the medication id, upper-cased, with a
-<n> suffix when another medication already holds that code. After
barcode_max_suffix taken candidates (the plain code counts as the first) it
falls back to MT + 6 timestamp digits + 2 random chars.
"""
import logging
import random
import re
import string
from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from database import Medication
from exceptions import (
    BarcodeConflictError, BarcodeGenerationError, BarcodeNotFoundError,
    MedicationNotFoundError, ValidationError,
)
from medication_service import (
    barcode_in_use, find_medication_by_barcode, find_medication_by_id, save_medication,
)
from timezone_utils import Clock, system_clock

logger = logging.getLogger(__name__)

BARCODE_PREFIX = "MT"
LEGACY_PREFIX = "MED-"
BASE_LENGTH = 8
BASE36_ALPHABET = string.digits + string.ascii_uppercase

SHORT_BARCODE_PATTERN = re.compile(r"^MT[A-Z0-9]{8}(-[0-9]+)?$")
LEGACY_BARCODE_PATTERN = re.compile(r"^MED-[A-Z0-9]{2,}$")


def barcode_base(medication_id: str) -> str:
    """Last 8 id characters, upper-cased; shorter ids are left-padded with 0"""
    if not medication_id:
        raise ValidationError("Medication id is required to derive a barcode")
    base = re.sub(r"[^A-Z0-9]", "X", str(medication_id).upper())
    return base[-BASE_LENGTH:].rjust(BASE_LENGTH, "0")


def fallback_barcode(clock: Clock = system_clock) -> str:
    timestamp = str(int(clock().timestamp() * 1000))[-6:]
    suffix = "".join(random.choices(BASE36_ALPHABET, k=2))
    return f"{BARCODE_PREFIX}{timestamp}{suffix}"


def choose_barcode(
    db: Session,
    medication_id: str,
    clock: Clock = system_clock,
    max_suffix: Optional[int] = None
) -> str:
    """First free candidate in MT<base>, MT<base>-1, MT<base>-2, ..."""
    max_suffix = settings.barcode_max_suffix if max_suffix is None else max_suffix
    base = f"{BARCODE_PREFIX}{barcode_base(medication_id)}"
    candidate = base
    attempt = 0

    while barcode_in_use(db, candidate, exclude_medication_id=medication_id):
        attempt += 1
        if attempt >= max_suffix:
            candidate = fallback_barcode(clock)
            logger.warning(
                f"Barcode {base} failed {attempt} candidates, using fallback {candidate}",
                extra={"medication_id": medication_id}
            )
            return candidate
        candidate = f"{base}-{attempt}"

    if attempt:
        logger.warning(f"Barcode collision on {base}, resolved as {candidate}", extra={"medication_id": medication_id})
    return candidate


def generate_barcode(
    db: Session,
    medication_id: str,
    clock: Clock = system_clock,
    max_suffix: Optional[int] = None
) -> str:
    """
    Pick a free code and commit it on the medication. A uniqueness conflict at
    commit means another writer won the race; derive again, a bounded number
    of times.
    """
    retries = settings.barcode_commit_retries

    for attempt in range(1, retries + 1):
        medication = find_medication_by_id(db, medication_id)
        if not medication:
            raise MedicationNotFoundError("Medication not found", {"medication_id": medication_id})

        code = choose_barcode(db, medication.id, clock, max_suffix)
        if medication.barcode_data == code:
            return code

        medication.barcode_data = code
        try:
            save_medication(db, medication)
        except BarcodeConflictError:
            logger.warning(
                f"Barcode {code} taken before commit (attempt {attempt}/{retries})",
                extra={"medication_id": medication_id}
            )
            continue

        logger.info(f"Assigned barcode {code}", extra={"medication_id": medication_id})
        return code

    raise BarcodeGenerationError(
        "Failed to generate unique barcode",
        {"medication_id": medication_id, "attempts": retries}
    )


def insert_with_barcode(
    db: Session,
    medication: Medication,
    clock: Clock = system_clock,
    max_suffix: Optional[int] = None
) -> Medication:
    """
    Insert a new medication and its code in a single commit. The id must be
    set beforehand. A conflict rolls back the insert as well, so the row is
    staged again with a freshly chosen code; on giving up nothing is stored.
    """
    retries = settings.barcode_commit_retries

    for attempt in range(1, retries + 1):
        medication.barcode_data = choose_barcode(db, medication.id, clock, max_suffix)
        try:
            save_medication(db, medication)
        except BarcodeConflictError:
            logger.warning(
                f"Barcode {medication.barcode_data} taken before insert (attempt {attempt}/{retries})",
                extra={"medication_id": medication.id}
            )
            continue

        logger.info(f"Assigned barcode {medication.barcode_data}", extra={"medication_id": medication.id})
        return medication

    db.rollback()
    raise BarcodeGenerationError(
        "Failed to generate unique barcode",
        {"medication_id": medication.id, "attempts": retries}
    )


def normalize_barcode(code: str) -> str:
    return (code or "").strip().upper()


def is_valid_barcode(code: str) -> bool:
    code = normalize_barcode(code)
    return bool(SHORT_BARCODE_PATTERN.match(code) or LEGACY_BARCODE_PATTERN.match(code))


def resolve_barcode(db: Session, code: str) -> Medication:
    code = normalize_barcode(code)
    if not is_valid_barcode(code):
        raise ValidationError("Invalid barcode format. Please scan a valid medication barcode.", {"barcode": code})

    medication = find_medication_by_barcode(db, code)
    if not medication:
        raise BarcodeNotFoundError(
            "Medication not found. Please check the barcode and try again.",
            {"barcode": code}
        )
    return medication
