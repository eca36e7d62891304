# dose_gate.py
"""
Minimum spacing between doses, derived from the daily frequency
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from exceptions import ValidationError
from models import DoseGateResult
from timezone_utils import Clock, system_clock, now_local, to_local

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24
MIN_FREQUENCY = 1
MAX_FREQUENCY = 6


def validate_frequency(frequency) -> int:
    if isinstance(frequency, bool) or not isinstance(frequency, int):
        raise ValidationError(f"Frequency must be an integer, got {frequency!r}")
    if not MIN_FREQUENCY <= frequency <= MAX_FREQUENCY:
        raise ValidationError(
            f"Frequency must be between {MIN_FREQUENCY} and {MAX_FREQUENCY} doses per day",
            {"frequency": frequency}
        )
    return frequency


def dose_interval_hours(frequency: int) -> float:
    return HOURS_PER_DAY / validate_frequency(frequency)


def can_take_medication_now(
    last_taken: Optional[datetime],
    frequency: int,
    clock: Clock = system_clock
) -> DoseGateResult:
    """
    Permit a dose once 24/frequency hours have passed since the last one.
    A missing last dose always permits. When blocked, hours_remaining is
    rounded up so it never reads 0.
    """
    interval_hours = dose_interval_hours(frequency)

    if last_taken is None:
        logger.debug("No previous dose found - can take now")
        return DoseGateResult(can_take=True)

    last_local = to_local(last_taken)
    elapsed_hours = (now_local(clock) - last_local).total_seconds() / 3600

    logger.debug(f"Time since last dose: {elapsed_hours:.2f}h, required interval: {interval_hours:.2f}h")

    if elapsed_hours >= interval_hours:
        return DoseGateResult(can_take=True)

    next_dose_time = last_local + timedelta(hours=interval_hours)
    hours_remaining = max(1, math.ceil(interval_hours - elapsed_hours))

    return DoseGateResult(
        can_take=False,
        next_dose_time=next_dose_time,
        hours_remaining=hours_remaining
    )
