# medication_timing.py
"""
Meal-relative intake windows.

Each medication is assigned to meals by its daily frequency, and each assigned
meal gets a window derived from the medication's timing relation. All times
are patient-local minutes since midnight. A window whose start is later than
its end spans midnight.
"""
import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple, Union

from database import MealType, TimingRelation
from exceptions import ValidationError
from models import MedicationWindow, TimingValidation
from timezone_utils import Clock, system_clock, now_local

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")

MAIN_MEALS = (MealType.BREAKFAST, MealType.LUNCH, MealType.DINNER)

MEALS_BY_FREQUENCY = {
    1: [MealType.LUNCH],
    2: [MealType.BREAKFAST, MealType.DINNER],
    3: [MealType.BREAKFAST, MealType.LUNCH, MealType.DINNER],
    4: [MealType.BREAKFAST, MealType.LUNCH, MealType.DINNER, MealType.SNACK],
}
DEFAULT_MEALS = [MealType.LUNCH]

# (minutes before the meal, minutes after the meal)
MEAL_RELATIVE_WINDOWS = {
    TimingRelation.AFTER_FOOD: (60, 150),
    TimingRelation.BEFORE_FOOD: (120, 60),
    TimingRelation.WITH_FOOD: (60, 60),
}
EMPTY_STOMACH_AFTER_MEAL = 150
EMPTY_STOMACH_BEFORE_MEAL = 120

MealTimes = Mapping[Union[MealType, str], str]


def time_to_minutes(time_str: str) -> int:
    match = TIME_PATTERN.match(time_str or "")
    if not match:
        raise ValidationError(f"Invalid time '{time_str}': expected HH:MM in 24-hour format")
    return int(match.group(1)) * 60 + int(match.group(2))


def minutes_to_time(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_timing_relation(value: Union[TimingRelation, str]) -> TimingRelation:
    try:
        return TimingRelation(value)
    except ValueError:
        valid = [relation.value for relation in TimingRelation]
        raise ValidationError(f"Unknown timing relation '{value}': must be one of {valid}")


def normalize_meal_times(meal_times: MealTimes) -> Dict[MealType, int]:
    """Meal id -> minutes since midnight. Unknown meal ids are rejected."""
    normalized = {}
    for meal, time_str in meal_times.items():
        try:
            meal_type = MealType(meal)
        except ValueError:
            raise ValidationError(f"Unknown meal '{meal}'")
        normalized[meal_type] = time_to_minutes(time_str)
    return normalized


def get_meals_for_frequency(frequency: int) -> List[MealType]:
    return list(MEALS_BY_FREQUENCY.get(frequency, DEFAULT_MEALS))


def _empty_stomach_window(meal: MealType, meal_minutes: Dict[MealType, int]) -> Tuple[int, int]:
    missing = [m.value for m in MAIN_MEALS if m not in meal_minutes]
    if missing:
        raise ValidationError(f"Empty stomach timing needs times for {missing}")

    ordered = sorted(MAIN_MEALS, key=lambda m: meal_minutes[m])

    if meal in ordered:
        index = ordered.index(meal)
        previous_meal = ordered[index - 1]
        next_meal = ordered[(index + 1) % len(ordered)]
    else:
        # snack sits between whichever main meals bracket it
        current = meal_minutes[meal]
        earlier = [m for m in ordered if meal_minutes[m] <= current]
        later = [m for m in ordered if meal_minutes[m] > current]
        previous_meal = earlier[-1] if earlier else ordered[-1]
        next_meal = later[0] if later else ordered[0]

    start = meal_minutes[previous_meal] + EMPTY_STOMACH_AFTER_MEAL
    end = meal_minutes[next_meal] - EMPTY_STOMACH_BEFORE_MEAL
    return start % MINUTES_PER_DAY, end % MINUTES_PER_DAY


def calculate_window(
    timing_relation: TimingRelation,
    meal: MealType,
    meal_minutes: Dict[MealType, int]
) -> Tuple[int, int]:
    if timing_relation == TimingRelation.EMPTY_STOMACH:
        return _empty_stomach_window(meal, meal_minutes)

    if timing_relation == TimingRelation.ANYTIME:
        return 0, MINUTES_PER_DAY - 1

    before, after = MEAL_RELATIVE_WINDOWS[timing_relation]
    meal_at = meal_minutes[meal]
    return max(0, meal_at - before), (meal_at + after) % MINUTES_PER_DAY


def calculate_medication_windows(
    frequency: int,
    timing_relation: Union[TimingRelation, str],
    meal_times: MealTimes
) -> List[MedicationWindow]:
    """Windows for every assigned meal that has a configured time, in assignment order"""
    relation = parse_timing_relation(timing_relation)
    meal_minutes = normalize_meal_times(meal_times)
    windows = []

    for meal in get_meals_for_frequency(frequency):
        if meal not in meal_minutes:
            continue

        start, end = calculate_window(relation, meal, meal_minutes)
        windows.append(MedicationWindow(
            meal_type=meal,
            meal_time=minutes_to_time(meal_minutes[meal]),
            window_start=minutes_to_time(start),
            window_end=minutes_to_time(end),
        ))

    return windows


def is_time_in_window(current: int, start: int, end: int) -> bool:
    if start > end:
        return current >= start or current <= end
    return start <= current <= end


def format_countdown(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


def validate_medication_timing(
    frequency: int,
    timing_relation: Union[TimingRelation, str],
    meal_times: Optional[MealTimes],
    current_time: Optional[str] = None,
    clock: Clock = system_clock
) -> TimingValidation:
    """
    Decide whether now falls inside one of the medication's meal windows.

    current_time is a local HH:MM string; when omitted it is read from the clock.
    """
    relation = parse_timing_relation(timing_relation)

    if relation == TimingRelation.ANYTIME:
        return TimingValidation(
            can_take=True,
            reason="This medication can be taken at any time"
        )

    if not meal_times:
        return TimingValidation(
            can_take=True,
            reason="Meal times not configured - timing check skipped"
        )

    if current_time is None:
        current_time = now_local(clock).strftime("%H:%M")
    current = time_to_minutes(current_time)

    windows = calculate_medication_windows(frequency, relation, meal_times)
    if not windows:
        return TimingValidation(
            can_take=True,
            reason="No meal times configured for this schedule - timing check skipped"
        )

    for window in windows:
        window.is_current_window = is_time_in_window(
            current, time_to_minutes(window.window_start), time_to_minutes(window.window_end)
        )
    current_windows = [w for w in windows if w.is_current_window]

    if current_windows:
        return TimingValidation(
            can_take=True,
            reason=f"Perfect timing! Take with {current_windows[0].meal_type.value}",
            current_windows=current_windows
        )

    next_window = None
    shortest_wait = None
    for window in windows:
        wait = time_to_minutes(window.window_start) - current
        if wait <= 0:
            wait += MINUTES_PER_DAY
        if shortest_wait is None or wait < shortest_wait:
            shortest_wait = wait
            next_window = window

    return TimingValidation(
        can_take=False,
        reason=(
            f"Not the right time. Next window: {next_window.meal_type.value} "
            f"({next_window.window_start} - {next_window.window_end})"
        ),
        next_window=next_window,
        time_until_next_window=format_countdown(shortest_wait)
    )


def check_timing_window(
    frequency: int,
    timing_relation: Union[TimingRelation, str],
    meal_times: Optional[MealTimes],
    current_time: Optional[str] = None,
    clock: Clock = system_clock
) -> TimingValidation:
    """
    validate_medication_timing for the dosing path: a fault while working out
    windows permits the dose and logs a warning instead of blocking it.
    """
    try:
        return validate_medication_timing(frequency, timing_relation, meal_times, current_time, clock)
    except Exception as e:
        logger.warning(f"Timing window check failed, permitting dose: {e}", exc_info=True)
        return TimingValidation(
            can_take=True,
            reason=f"Timing check unavailable ({e}) - dose permitted for caregiver review"
        )
