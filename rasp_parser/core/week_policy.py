# rasp_parser/core/week_policy.py
import logging
from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence

from bs4 import Tag

from . import date_utils
from .date_utils import WeekIndex
from .grid import DayRange, TableGrid

log = logging.getLogger(__name__)

WeekPolicy = Literal["preferCurrent", "current", "closest"]


@dataclass
class TableCandidate:
    """A table that passed header detection."""
    table: Tag
    grid: TableGrid
    header_index: int
    ranges: List[DayRange]

    @property
    def week_index(self) -> int:
        return WeekIndex.from_string(self.ranges[0].day).value


def _closest(candidates: Sequence[int], current: int) -> int:
    # min() keeps page order on ties
    return min(candidates, key=lambda week: abs(week - current))


def select_week(
    week_indexes: Sequence[int],
    policy: WeekPolicy,
    current: int,
    is_sunday: bool = False,
    hold_current_on_sunday: bool = True,
) -> Optional[int]:
    """
    Picks the week to parse among the weeks published on a page.

    Args:
        week_indexes: WeekIndex values of the candidate tables, in page order.
        policy: "current", "closest" or "preferCurrent".
        current: WeekIndex of today.
        is_sunday: Whether today is a Sunday.
        hold_current_on_sunday: On Sundays, prefer the nearest past week
            over future weeks when the current one is missing.

    Returns:
        The selected WeekIndex, or None if the policy accepts none of them.
    """
    candidates = list(dict.fromkeys(week_indexes))
    if not candidates:
        return None
    if current in candidates:
        return current
    if policy == "current":
        return None
    if policy == "closest":
        return _closest(candidates, current)

    past = [week for week in candidates if week < current]
    if is_sunday and hold_current_on_sunday and past:
        return max(past)
    future = [week for week in candidates if week > current]
    if future:
        return min(future)
    return _closest(candidates, current)


def select_tables(
    candidates: List[TableCandidate],
    policy: WeekPolicy,
    hold_current_on_sunday: bool = True,
) -> List[TableCandidate]:
    """Returns every candidate table belonging to the week chosen by `policy`."""
    if len(set(c.week_index for c in candidates)) > 2:
        log.warning(f"Page publishes {len(set(c.week_index for c in candidates))} weeks at once")

    selected = select_week(
        [candidate.week_index for candidate in candidates],
        policy,
        WeekIndex.now().value,
        is_sunday=date_utils.today().weekday() == 6,
        hold_current_on_sunday=hold_current_on_sunday,
    )
    if selected is None:
        log.info(f"Week policy '{policy}' selected no table out of {len(candidates)}")
        return []
    return [candidate for candidate in candidates if candidate.week_index == selected]
