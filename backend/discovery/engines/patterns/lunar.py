"""Lunar phase calculation.

Phase from the mean synodic month counted from a reference new moon
(2000-01-06 18:14 UTC, JD 2451550.26), after Meeus, "Astronomical
Algorithms" (1991). Accurate to within about a day, which is enough for
eight equal phase buckets. No external ephemeris.
"""

from __future__ import annotations

import math
from datetime import date

KNOWN_NEW_MOON_JD = 2451550.26
SYNODIC_MONTH = 29.53058867

PHASES: tuple[str, ...] = (
    "new_moon",
    "waxing_crescent",
    "first_quarter",
    "waxing_gibbous",
    "full_moon",
    "waning_gibbous",
    "last_quarter",
    "waning_crescent",
)

PHASE_LABELS: dict[str, str] = {
    "new_moon": "New Moon",
    "waxing_crescent": "Waxing Crescent",
    "first_quarter": "First Quarter",
    "waxing_gibbous": "Waxing Gibbous",
    "full_moon": "Full Moon",
    "waning_gibbous": "Waning Gibbous",
    "last_quarter": "Last Quarter",
    "waning_crescent": "Waning Crescent",
}


def julian_date(d: date) -> float:
    """Julian date at 0h UT for a calendar date (Gregorian)."""
    y, m = d.year, d.month
    if m <= 2:
        y -= 1
        m += 12
    a = y // 100
    b = 2 - a + a // 4
    return math.floor(365.25 * (y + 4716)) + math.floor(30.6001 * (m + 1)) + d.day + b - 1524.5


def moon_age(d: date) -> float:
    """Days since the last new moon, in [0, SYNODIC_MONTH)."""
    cycles = (julian_date(d) - KNOWN_NEW_MOON_JD) / SYNODIC_MONTH
    return (cycles - math.floor(cycles)) * SYNODIC_MONTH


def phase_index(d: date) -> int:
    return min(int(moon_age(d) / (SYNODIC_MONTH / 8)), 7)


def moon_phase(d: date) -> str:
    return PHASES[phase_index(d)]
