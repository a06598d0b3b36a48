import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple

CRITERIA_KEY = "criteria"
BOOKING_KEY = "booking"

WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
ALL_WEEKDAYS: Tuple[bool, ...] = (True,) * 7

MONTHS = {
    name: index
    for index, name in enumerate(
        (
            "january",
            "february",
            "march",
            "april",
            "may",
            "june",
            "july",
            "august",
            "september",
            "october",
            "november",
            "december",
        ),
        start=1,
    )
}

TEST_DATETIME_PATTERN = re.compile(
    r"^\s*(?P<weekday>[A-Za-z]+)\s+(?P<day>\d{1,2})\s+(?P<month>[A-Za-z]+)\s+(?P<year>\d{4})\s+"
    r"(?P<hour>\d{1,2}):(?P<minute>\d{2})\s*(?P<meridiem>am|pm)\s*$",
    re.IGNORECASE,
)
DAY_MONTH_YEAR_PATTERN = re.compile(r"(\d{2})/(\d{2})/(\d{4})")


@dataclass(frozen=True)
class SlotCandidate:
    date: date
    time_of_day: Optional[time] = None
    location: str = ""
    handle: Any = field(default=None, compare=False, repr=False)

    def sort_key(self) -> Tuple[date, time]:
        return (self.date, self.time_of_day or time.min)


@dataclass(frozen=True)
class SearchCriteria:
    min_date: date
    max_date: date
    allowed_weekdays: Tuple[bool, ...] = ALL_WEEKDAYS
    allowed_locations: Tuple[str, ...] = ()
    only_sooner: bool = True
    booked_date: Optional[date] = None
    booked_location: Optional[str] = None

    def __post_init__(self) -> None:
        if len(self.allowed_weekdays) != 7:
            raise ValueError("allowed_weekdays must contain exactly 7 entries (Monday first)")

    def weekday_allowed(self, value: date) -> bool:
        return bool(self.allowed_weekdays[value.weekday()])

    def location_allowed(self, name: Optional[str]) -> bool:
        if not self.allowed_locations:
            return True
        if not name:
            return False
        lowered = name.strip().lower()
        return any(lowered.startswith(prefix.strip().lower()) for prefix in self.allowed_locations)

    def date_range_only(self) -> "SearchCriteria":
        return replace(
            self,
            allowed_weekdays=ALL_WEEKDAYS,
            allowed_locations=(),
            only_sooner=False,
        )

    def with_booking(self, booked_date: Optional[date], booked_location: Optional[str]) -> "SearchCriteria":
        return replace(self, booked_date=booked_date, booked_location=booked_location)

    def to_dict(self) -> dict:
        return {
            "min_date": self.min_date.isoformat(),
            "max_date": self.max_date.isoformat(),
            "allowed_weekdays": list(self.allowed_weekdays),
            "allowed_locations": list(self.allowed_locations),
            "only_sooner": self.only_sooner,
            "booked_date": self.booked_date.isoformat() if self.booked_date else None,
            "booked_location": self.booked_location,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "SearchCriteria":
        booked = raw.get("booked_date")
        return cls(
            min_date=date.fromisoformat(raw["min_date"]),
            max_date=date.fromisoformat(raw["max_date"]),
            allowed_weekdays=tuple(bool(flag) for flag in raw.get("allowed_weekdays", ALL_WEEKDAYS)),
            allowed_locations=tuple(raw.get("allowed_locations") or ()),
            only_sooner=bool(raw.get("only_sooner", True)),
            booked_date=date.fromisoformat(booked) if booked else None,
            booked_location=raw.get("booked_location"),
        )


def weekdays_from_names(names: Iterable[str]) -> Tuple[bool, ...]:
    wanted = set()
    for name in names:
        key = name.strip().lower()[:3]
        if not key:
            continue
        if key not in WEEKDAY_NAMES:
            raise ValueError(f"Unknown weekday name: {name!r}")
        wanted.add(WEEKDAY_NAMES.index(key))
    return tuple(index in wanted for index in range(7))


# ----------------------------------------------------------------------
# Filtering and selection
# ----------------------------------------------------------------------
def rejection_reason(candidate: SlotCandidate, criteria: SearchCriteria) -> Optional[str]:
    if not criteria.min_date <= candidate.date <= criteria.max_date:
        return f"{candidate.date} is outside {criteria.min_date}..{criteria.max_date}"
    if not criteria.weekday_allowed(candidate.date):
        return f"{candidate.date:%A} is not an allowed day"
    if not criteria.location_allowed(candidate.location):
        return "location is not in the allowed list"
    if criteria.only_sooner:
        if criteria.booked_date is None:
            return "current booking date is unknown"
        if not candidate.date < criteria.booked_date:
            return f"{candidate.date} is not sooner than booked {criteria.booked_date}"
    return None


def filter_candidates(candidates: Iterable[SlotCandidate], criteria: SearchCriteria) -> List[SlotCandidate]:
    survivors = []
    for candidate in candidates:
        reason = rejection_reason(candidate, criteria)
        if reason:
            logging.debug("Filtered out %s (%s): %s", candidate.location or "slot", candidate.date, reason)
            continue
        survivors.append(candidate)
    return sorted(survivors, key=SlotCandidate.sort_key)


def select_best(candidates: Iterable[SlotCandidate], criteria: SearchCriteria) -> Optional[SlotCandidate]:
    survivors = filter_candidates(candidates, criteria)
    return survivors[0] if survivors else None


class SearchStep(str, Enum):
    WIDEN = "widen"
    RESTART = "restart"


def next_search_step(displayed: int, maximum: int) -> SearchStep:
    """Reveal more results until ``maximum`` are shown, then restart the search."""
    return SearchStep.WIDEN if displayed < maximum else SearchStep.RESTART


def confirmation_qualifies(
    new_date: Optional[date],
    previous_date: Optional[date],
    new_location: Optional[str],
    criteria: SearchCriteria,
) -> bool:
    """Re-validate the final confirmation page against the criteria.

    The "sooner" check uses the previous date printed on the page rather
    than the cached booking, which may be stale.
    """
    if new_date is None or previous_date is None or not new_location:
        logging.warning(
            "Incomplete confirmation data (new=%s, previous=%s, location=%s)",
            new_date,
            previous_date,
            new_location,
        )
        return False

    checks = {
        "sooner": not criteria.only_sooner or new_date < previous_date,
        "in_range": criteria.min_date <= new_date <= criteria.max_date,
        "allowed_day": criteria.weekday_allowed(new_date),
        "allowed_location": criteria.location_allowed(new_location),
    }
    logging.info("Final confirmation evaluation for %s at %s: %s", new_date, new_location, checks)
    return all(checks.values())


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def parse_test_datetime(text: Optional[str]) -> Optional[datetime]:
    """Parse ``"Wednesday 1 April 2026 1:25pm"``; the weekday name is not checked."""
    if not text:
        return None
    match = TEST_DATETIME_PATTERN.match(text)
    if not match:
        return None

    month = MONTHS.get(match.group("month").lower())
    if month is None:
        return None

    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    if not 1 <= hour <= 12 or minute > 59:
        return None
    meridiem = match.group("meridiem").lower()
    if meridiem == "am":
        hour = 0 if hour == 12 else hour
    elif hour != 12:
        hour += 12

    try:
        return datetime(int(match.group("year")), month, int(match.group("day")), hour, minute)
    except ValueError:
        return None


def parse_day_month_year(text: Optional[str]) -> Optional[date]:
    if not text:
        return None
    match = DAY_MONTH_YEAR_PATTERN.search(text)
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def default_date_window(today: Optional[date] = None) -> Tuple[date, date]:
    start = today or date.today()
    return start, start + timedelta(days=210)


def load_criteria(store, fallback: SearchCriteria) -> SearchCriteria:
    """Read criteria and merge in the cached booking discovered on manage-view."""
    raw = store.get(CRITERIA_KEY, None)
    try:
        criteria = SearchCriteria.from_dict(raw) if raw else fallback
    except (KeyError, TypeError, ValueError) as exc:
        logging.warning("Stored search criteria invalid (%s); using configured defaults", exc)
        criteria = fallback

    booking = store.get(BOOKING_KEY, None) or {}
    booked = booking.get("date")
    if booked:
        try:
            criteria = criteria.with_booking(date.fromisoformat(booked), booking.get("location"))
        except ValueError:
            logging.warning("Ignoring malformed cached booking date: %s", booked)
    return criteria


def save_booking(store, booked_date: date, location: Optional[str]) -> None:
    store.set(BOOKING_KEY, {"date": booked_date.isoformat(), "location": location})


def sequence_summary(candidates: Sequence[SlotCandidate]) -> str:
    return ", ".join(f"{c.location or '?'}@{c.date.isoformat()}" for c in candidates) or "none"
