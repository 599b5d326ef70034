# rasp_parser/core/date_utils.py
import logging
import re
from datetime import date, timedelta
from functools import lru_cache, total_ordering
from typing import Optional, Tuple, Union

log = logging.getLogger(__name__)

# --- Regular Expressions for Date Parsing ---
# Matches the canonical DD.MM.YYYY format (leading zeros optional on input)
STRING_DATE_RE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")

# Day ordinals count from the unix epoch
EPOCH = date(1970, 1, 1)
# First Monday after the epoch; week ordinals count from here
WEEK_EPOCH = date(1970, 1, 5)


def today() -> date:
    """Current local date. Every date predicate goes through this function."""
    return date.today()


@lru_cache(maxsize=512)
def _parse_string_date(value: str) -> Optional[date]:
    match = STRING_DATE_RE.match(value.strip())
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        log.debug(f"Invalid calendar date: '{value}'")
        return None


class StringDate:
    """The canonical `dd.mm.yyyy` textual form of a calendar date."""

    __slots__ = ("value",)

    def __init__(self, value: str):
        if _parse_string_date(value) is None:
            raise ValueError(f"Invalid date string: '{value}'")
        self.value = value

    @classmethod
    def from_date(cls, value: date) -> "StringDate":
        return cls(value.strftime("%d.%m.%Y"))

    @classmethod
    def from_day_index(cls, index: Union["DayIndex", int]) -> "StringDate":
        return cls.from_date(EPOCH + timedelta(days=int(index)))

    @staticmethod
    def is_valid(value: str) -> bool:
        return _parse_string_date(value) is not None

    def to_date(self) -> date:
        return _parse_string_date(self.value)

    def to_day_index(self) -> "DayIndex":
        return DayIndex.from_date(self.to_date())

    def is_sunday(self) -> bool:
        return self.to_date().weekday() == 6

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"StringDate('{self.value}')"

    def __eq__(self, other) -> bool:
        if isinstance(other, StringDate):
            return self.to_date() == other.to_date()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.to_date())


@total_ordering
class _Ordinal:
    """Integer wrapper shared by DayIndex and WeekIndex."""

    __slots__ = ("value",)

    def __init__(self, value: int):
        self.value = int(value)

    def __int__(self) -> int:
        return self.value

    def __index__(self) -> int:
        return self.value

    def value_of(self) -> int:
        return self.value

    def __eq__(self, other) -> bool:
        if isinstance(other, _Ordinal):
            return type(self) is type(other) and self.value == other.value
        if isinstance(other, int):
            return self.value == other
        return NotImplemented

    def __lt__(self, other) -> bool:
        if isinstance(other, (_Ordinal, int)):
            return self.value < int(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.value))

    def __add__(self, other: int):
        return type(self)(self.value + int(other))

    def __sub__(self, other):
        if isinstance(other, _Ordinal):
            return self.value - other.value
        return type(self)(self.value - int(other))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value})"


class DayIndex(_Ordinal):
    """Days since 1970-01-01."""

    @classmethod
    def from_date(cls, value: date) -> "DayIndex":
        return cls((value - EPOCH).days)

    @classmethod
    def from_string(cls, value: str) -> "DayIndex":
        return StringDate(value).to_day_index()

    @classmethod
    def now(cls) -> "DayIndex":
        return cls.from_date(today())

    def to_date(self) -> date:
        return EPOCH + timedelta(days=self.value)

    def to_string(self) -> str:
        return StringDate.from_date(self.to_date()).value

    def is_today(self) -> bool:
        return self.value == DayIndex.now().value

    def is_tomorrow(self) -> bool:
        return self.value == DayIndex.now().value + 1

    def is_not_past(self) -> bool:
        return self.value >= DayIndex.now().value

    def week_index(self) -> "WeekIndex":
        return WeekIndex.from_date(self.to_date())


class WeekIndex(_Ordinal):
    """
    Weeks since the Monday 1970-01-05.

    A school week runs Monday to Saturday; Sunday is folded back into the
    week that precedes it, so Monday..Sunday share one ordinal.
    """

    @classmethod
    def from_date(cls, value: date) -> "WeekIndex":
        if value.weekday() == 6:
            value = value - timedelta(days=1)
        return cls((value - WEEK_EPOCH).days // 7)

    @classmethod
    def from_string(cls, value: str) -> "WeekIndex":
        return cls.from_date(StringDate(value).to_date())

    @classmethod
    def now(cls) -> "WeekIndex":
        return cls.from_date(today())

    def monday(self) -> date:
        return WEEK_EPOCH + timedelta(weeks=self.value)

    def get_day_index_range(self) -> Tuple[DayIndex, DayIndex]:
        """Returns the [Monday, Sunday] day ordinals of this week."""
        start = DayIndex.from_date(self.monday())
        return start, start + 6

    def contains(self, day: Union[DayIndex, int]) -> bool:
        start, end = self.get_day_index_range()
        return start <= int(day) <= end

    def is_current(self) -> bool:
        return self.value == WeekIndex.now().value

    def is_future(self) -> bool:
        return self.value > WeekIndex.now().value

    def academic_week(self) -> int:
        return get_academic_week(self.monday())


def get_academic_year_start(value: Optional[date] = None) -> date:
    """
    First Monday on or after September 1 of the academic year containing `value`.

    Args:
        value: Date inside the academic year; defaults to today.

    Returns:
        The date of the first school Monday.
    """
    value = value or today()
    year = value.year if value.month >= 9 else value.year - 1
    start = date(year, 9, 1)
    return start + timedelta(days=(7 - start.weekday()) % 7)


def get_academic_week(value: Optional[date] = None) -> int:
    """1-based academic week number of `value` (display only)."""
    value = value or today()
    start = get_academic_year_start(value)
    return (value - start).days // 7 + 1
