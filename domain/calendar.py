"""
Calendar unit arithmetic for bookings.

All date comparisons in the engine go through this module. The two
calculation modes disagree at shared boundary dates:

* Days mode counts both endpoints as occupied: 15.11-17.11 is 3 days
  (15, 16, 17) and a stay ending on the 17th blocks a stay starting on the 17th.
* Nights mode releases the check-out day: 15.11-17.11 is 2 nights and the
  room is free again for a check-in on the 17th.
"""
from datetime import date, timedelta

from domain.enums import BookingCalculationMode

# Minimum stay per mode. Days mode is 2, not "nights + 1" applied to 1:
# a same-day pair is a single day and is rejected.
MINIMUM_PERIOD = {
    BookingCalculationMode.DAYS: 2,
    BookingCalculationMode.NIGHTS: 1,
}

UNIT_NAMES = {
    BookingCalculationMode.DAYS: ("день", "дня", "дней"),
    BookingCalculationMode.NIGHTS: ("ночь", "ночи", "ночей"),
}


def calculate_days(check_in: date, check_out: date) -> int:
    """Both endpoints included: (check_out - check_in) + 1"""
    return (check_out - check_in).days + 1


def calculate_nights(check_in: date, check_out: date) -> int:
    """Check-out day released: (check_out - check_in)"""
    return (check_out - check_in).days


def calculate_units(check_in: date, check_out: date, mode: BookingCalculationMode) -> int:
    """Number of charged units (days or nights) for a stay"""
    if mode == BookingCalculationMode.DAYS:
        return calculate_days(check_in, check_out)
    return calculate_nights(check_in, check_out)


def get_minimum_period(mode: BookingCalculationMode) -> int:
    return MINIMUM_PERIOD[mode]


def do_periods_overlap(
    check_in_1: date,
    check_out_1: date,
    check_in_2: date,
    check_out_2: date,
    mode: BookingCalculationMode
) -> bool:
    """Check whether two stays compete for the same room"""
    if mode == BookingCalculationMode.DAYS:
        return check_in_1 <= check_out_2 and check_out_1 >= check_in_2
    return check_in_1 < check_out_2 and check_out_1 > check_in_2


def are_segments_sequential(
    previous_check_out: date,
    next_check_in: date,
    mode: BookingCalculationMode
) -> bool:
    """Check that a segment follows the previous one without gap or overlap"""
    next_day = previous_check_out + timedelta(days=1)
    if mode == BookingCalculationMode.DAYS:
        return next_check_in == next_day
    return next_check_in in (previous_check_out, next_day)


def expected_next_check_in(previous_check_out: date, mode: BookingCalculationMode) -> date:
    """Earliest legal check-in for the segment after previous_check_out"""
    if mode == BookingCalculationMode.DAYS:
        return previous_check_out + timedelta(days=1)
    return previous_check_out


def get_unit_name(mode: BookingCalculationMode, count: int) -> str:
    """Plural form of the unit: 1 -> singular, 2-4 -> paucal, 0 and 5+ -> plural"""
    singular, paucal, plural = UNIT_NAMES[mode]
    if count == 1:
        return singular
    if 2 <= count <= 4:
        return paucal
    return plural


def format_units(mode: BookingCalculationMode, count: int) -> str:
    return f"{count} {get_unit_name(mode, count)}"
