# rasp_parser/core/diff_service.py
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .date_utils import WeekIndex
from ..models.models import Day, Entity


@dataclass
class DiffResult:
    """Outcome of merging freshly parsed days into cached ones."""
    merged_days: List[Day] = field(default_factory=list)
    added: List[Day] = field(default_factory=list)
    changed: List[Day] = field(default_factory=list)


def _dump_slot(slot: Any) -> Any:
    if slot is None:
        return None
    if isinstance(slot, list):
        return [entry.model_dump() for entry in slot]
    return slot.model_dump()


def serialize_lessons(day: Day) -> str:
    """Stable serialized form of a day's lesson slots, used for equality checks."""
    return json.dumps([_dump_slot(slot) for slot in day.lessons], ensure_ascii=False, sort_keys=True)


def _replace_reported(result: DiffResult, old: Day, new: Day) -> None:
    for reported in (result.added, result.changed):
        for i, day in enumerate(reported):
            if day is old:
                reported[i] = new
                return
    if serialize_lessons(old) != serialize_lessons(new):
        result.changed.append(new)


def merge_days(new_days: Sequence[Day], cached_days: Sequence[Day]) -> DiffResult:
    """
    Merges newly parsed days into the cached day list of one entity.

    Compares days by `date`:
    - date only in `new_days`: added
    - date in both with different lessons: changed, new value wins
    - date in both with equal lessons: unchanged, cached value kept
    Cached dates missing from `new_days` stay in the result; pruning them is
    up to the caller.

    Args:
        new_days: Days from the latest parse.
        cached_days: Days currently stored for the entity.

    Returns:
        A DiffResult whose `merged_days` is unique by date and sorted ascending.
    """
    result = DiffResult()
    cached: Dict[str, Day] = {day.date: day for day in cached_days}
    merged: Dict[str, Day] = {}

    for day in new_days:
        if day.date in merged:
            # Same date parsed twice, the later occurrence wins
            _replace_reported(result, merged[day.date], day)
            merged[day.date] = day
            continue

        previous = cached.pop(day.date, None)
        if previous is None:
            result.added.append(day)
            merged[day.date] = day
        elif serialize_lessons(previous) != serialize_lessons(day):
            result.changed.append(day)
            merged[day.date] = day
        else:
            merged[day.date] = previous

    # Dates that disappeared from the page
    for date_str, day in cached.items():
        merged[date_str] = day

    result.merged_days = sorted(merged.values(), key=lambda d: d.day_index().value)
    return result


def classify_day_event(day: Day, changed: bool, last_noticed_day: Optional[int]) -> Optional[str]:
    """
    Decides which notification a merged day deserves.

    Args:
        day: An added or changed day.
        changed: True if the day replaced a cached version, False if it is new.
        last_noticed_day: DayIndex of the last day the entity was notified about.

    Returns:
        "update", "add" or None.
    """
    index = day.day_index()
    if changed and index.is_today():
        return "update"
    if index.is_tomorrow():
        return "update" if last_noticed_day == index.value else "add"
    return None


def should_keep_day(day: Day, site_min_day_index: Optional[int], preserve_current_week: bool) -> bool:
    """
    A cached day survives if it is today or later, if the site still shows it
    (at or after the earliest parsed day), or if it belongs to the current
    week while the current week is being preserved.
    """
    index = day.day_index()
    if preserve_current_week and WeekIndex.now().contains(index):
        return True
    if index.is_not_past():
        return True
    return site_min_day_index is not None and index.value >= site_min_day_index


def max_week_index(entities: Dict[str, Entity]) -> Optional[int]:
    indexes = [day.week_index().value for entity in entities.values() for day in entity.days]
    return max(indexes) if indexes else None


def min_day_index(entities: Dict[str, Entity]) -> Optional[int]:
    indexes = [day.day_index().value for entity in entities.values() for day in entity.days]
    return min(indexes) if indexes else None


def diff_entity_maps(current: Dict[str, Entity], previous: Dict[str, Entity], limit: int = 20) -> List[str]:
    """
    Lists day level differences between two parses of the same page.

    Lines look like "3ТО-1: changed 02.09.2025". At most `limit` lines
    are returned.
    """
    lines: List[str] = []
    for key in sorted(set(current) | set(previous)):
        if key not in previous:
            lines.append(f"{key}: only in current")
        elif key not in current:
            lines.append(f"{key}: only in previous")
        else:
            diff = merge_days(current[key].days, previous[key].days)
            current_dates = {day.date for day in current[key].days}
            lines.extend(f"{key}: added {day.date}" for day in diff.added)
            lines.extend(f"{key}: changed {day.date}" for day in diff.changed)
            lines.extend(
                f"{key}: removed {day.date}" for day in previous[key].days if day.date not in current_dates
            )
        if len(lines) >= limit:
            break
    return lines[:limit]
