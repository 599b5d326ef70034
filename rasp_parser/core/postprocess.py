# rasp_parser/core/postprocess.py
from typing import Any, List

from .constants import DEFAULT_DOUBLE_LESSON_TYPE, DOUBLE_LESSON_COMMENT
from ..models.models import Day


def slot_entries(slot: Any) -> List[Any]:
    """Normalizes a lesson slot (None / entry / list of entries) to a list."""
    if slot is None:
        return []
    if isinstance(slot, list):
        return slot
    return [slot]


def assign_lesson(lessons: List[Any], number: int, lesson: Any) -> None:
    """Places `lesson` at lesson number `number` (1-based), padding with None."""
    if lesson is None or number < 1:
        return
    while len(lessons) < number:
        lessons.append(None)
    lessons[number - 1] = lesson


def trim_trailing_nulls(lessons: List[Any]) -> List[Any]:
    while lessons and lessons[-1] is None:
        lessons.pop()
    return lessons


def count_lessons(lessons: List[Any]) -> int:
    return sum(len(slot_entries(slot)) for slot in lessons)


def _same_lesson(a: Any, b: Any, counterpart_field: str) -> bool:
    return (
        a.type == b.type
        and a.subject == b.subject
        and getattr(a, counterpart_field) == getattr(b, counterpart_field)
        and a.subgroup == b.subgroup
    )


def collapse_double_lessons(lessons: List[Any], counterpart_field: str,
                            placeholder_type: str = DEFAULT_DOUBLE_LESSON_TYPE) -> List[Any]:
    """
    Joins a placeholder-typed lesson with its repeat later in the day.

    For every slot whose entries all carry `placeholder_type` and no comment,
    later slots are searched from the end of the day back towards it. The
    first slot with the same entry count and at least one entry matching on
    type, subject, `counterpart_field` (teacher or group) and subgroup is
    cleared, and the earlier entries get the "2 часа" comment.

    Args:
        lessons: The day's lesson slots, modified in place.
        counterpart_field: "teacher" for group days, "group" for teacher days.
        placeholder_type: Lesson type marking a split double lesson.

    Returns:
        The same list, with trailing empty slots trimmed.
    """
    for i, slot in enumerate(lessons):
        entries = slot_entries(slot)
        if not entries or not all(e.type == placeholder_type and e.comment is None for e in entries):
            continue

        for j in range(len(lessons) - 1, i, -1):
            later = slot_entries(lessons[j])
            if not later or len(later) != len(entries):
                continue
            if any(_same_lesson(a, b, counterpart_field) for a, b in zip(entries, later)):
                for entry in entries:
                    entry.comment = DOUBLE_LESSON_COMMENT
                lessons[j] = None
                break

    return trim_trailing_nulls(lessons)


def post_process_day(day: Day, counterpart_field: str,
                     placeholder_type: str = DEFAULT_DOUBLE_LESSON_TYPE) -> Day:
    collapse_double_lessons(day.lessons, counterpart_field, placeholder_type)
    return day


def clear_sundays(days: List[Day]) -> List[Day]:
    """Drops Sundays without any lesson."""
    return [day for day in days if not (day.is_sunday() and count_lessons(day.lessons) == 0)]
