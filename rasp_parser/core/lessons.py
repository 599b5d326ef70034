# rasp_parser/core/lessons.py
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .errors import LessonParseError
from .text import clean_text, is_teacher_line, remove_dashes
from ..models.models import GroupLessonEntry, GroupLessonSlot, TeacherLessonEntry, TeacherLessonSlot

log = logging.getLogger(__name__)

# "[subgroup.]subject (type) trailer" - trailer is the teacher (group cells) or the group (teacher cells)
COMBINED_RE = re.compile(r"^(?:(\d+)\s*[.)]\s*)?(.+?)\s*\(([^)]+)\)\s*(.+)?$")
# "[subgroup.]group - subject (type)" as printed in teacher cells
GROUP_SUBJECT_RE = re.compile(r"^(?:(\d+)\s*[.)]\s*)?(\S+)\s+-\s+(.+?)(?:\s*\(([^)]+)\))?$")
TYPE_RE = re.compile(r"^\((.+)\)$")
LESSON_LINE_RE = re.compile(r"^(?:(\d+)\s*[.)]\s*)?(.+)$")
GROUP_PART_RE = re.compile(r"^(?:(\d+)\.)?(.+)$")

LessonEntry = Union[GroupLessonEntry, TeacherLessonEntry]


def _to_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value else None


def _lesson_line(line: str) -> Dict[str, Any]:
    match = LESSON_LINE_RE.match(line)
    subgroup, subject = match.groups()
    return {"subgroup": _to_int(subgroup), "subject": clean_text(subject)}


def parse_group_part(line: str) -> Tuple[Optional[int], str]:
    """Splits "2.3ТО-1" into (2, "3ТО-1")."""
    compact = re.sub(r"\s+", "", line)
    match = GROUP_PART_RE.match(compact)
    subgroup, group = match.groups()
    return _to_int(subgroup), group


def parse_group_entries(lines: Sequence[str]) -> List[GroupLessonEntry]:
    """
    Parses the lines of a group timetable cell into lesson entries.

    Accepted shapes (in any sequence inside one cell):
        "1. Математика (лек) Иванов И.И."      one line, complete entry
        "Математика" / "(лек)" / "Иванов И.И." one line per field
        extra "Петров П.П." lines after a teacher are co-teachers

    Args:
        lines: Output of extract_lines for the lesson cell.

    Returns:
        Entries in the order they appear; entries without a subject are dropped.
    """
    entries: List[GroupLessonEntry] = []
    current: Optional[Dict[str, Any]] = None

    def flush():
        nonlocal current
        if current and current.get("subject"):
            entries.append(GroupLessonEntry(**current))
        current = None

    for line in lines:
        combined = COMBINED_RE.match(line)
        if combined:
            flush()
            subgroup, subject, lesson_type, trailer = combined.groups()
            entry = {
                "subgroup": _to_int(subgroup),
                "subject": clean_text(subject),
                "type": clean_text(lesson_type),
                "teacher": clean_text(trailer) or None,
            }
            if entry["teacher"]:
                entries.append(GroupLessonEntry(**entry))
            else:
                # Teacher may follow on the next line
                current = entry
            continue

        type_match = TYPE_RE.match(line)
        if type_match and current and current.get("subject"):
            current["type"] = clean_text(type_match.group(1))
            continue

        if current is None:
            current = _lesson_line(line)
        elif not current.get("teacher"):
            current["teacher"] = line
        elif is_teacher_line(line):
            current["teacher"] = f"{current['teacher']}, {line}"
        else:
            flush()
            current = _lesson_line(line)

    flush()
    return entries


def parse_teacher_entries(lines: Sequence[str]) -> List[TeacherLessonEntry]:
    """
    Parses the lines of a teacher timetable cell into lesson entries.

    Accepted shapes:
        "3ТО-1 - Математика (лек)"           group first, one line
        "Математика (лек) 2.3ТО-1"           subject first, one line
        "Математика" / "(лек)" / "3ТО-1"     one line per field

    Entries lacking either subject or group are dropped.
    """
    entries: List[TeacherLessonEntry] = []
    current: Optional[Dict[str, Any]] = None

    def flush():
        nonlocal current
        if current and current.get("subject") and current.get("group"):
            entries.append(TeacherLessonEntry(**current))
        current = None

    for line in lines:
        dashed = GROUP_SUBJECT_RE.match(line)
        if dashed:
            flush()
            subgroup, group, subject, lesson_type = dashed.groups()
            entries.append(TeacherLessonEntry(
                subgroup=_to_int(subgroup),
                group=group,
                subject=clean_text(subject),
                type=clean_text(lesson_type) or None,
            ))
            continue

        combined = COMBINED_RE.match(line)
        if combined:
            flush()
            subgroup, subject, lesson_type, trailer = combined.groups()
            current = {
                "subgroup": _to_int(subgroup),
                "subject": clean_text(subject),
                "type": clean_text(lesson_type),
            }
            if trailer:
                group_subgroup, group = parse_group_part(trailer)
                current["group"] = group
                if current["subgroup"] is None:
                    current["subgroup"] = group_subgroup
                flush()
            continue

        type_match = TYPE_RE.match(line)
        if type_match and current and current.get("subject"):
            current["type"] = clean_text(type_match.group(1))
            continue

        if current is None:
            current = _lesson_line(line)
        elif not current.get("group"):
            group_subgroup, group = parse_group_part(line)
            current["group"] = group
            if current["subgroup"] is None:
                current["subgroup"] = group_subgroup
        else:
            flush()
            current = _lesson_line(line)

    flush()
    return entries


def apply_cabinets(entries: List[LessonEntry], cabinet_lines: Sequence[str], by_subgroup: bool = True) -> None:
    """
    Assigns cabinets from the cabinet cell's lines to the entries in place.

    One line applies to every entry. Otherwise lines are matched by subgroup
    number (when `by_subgroup` and entries carry subgroups) or by position,
    reusing the last line for any surplus entries.
    """
    cabinets: List[Optional[str]] = [remove_dashes(line) for line in cabinet_lines] or [None]
    if not any(cabinets):
        return

    if len(cabinets) == 1:
        for entry in entries:
            entry.cabinet = cabinets[0]
        return

    use_subgroups = by_subgroup and any(entry.subgroup for entry in entries)
    last = len(cabinets) - 1
    for i, entry in enumerate(entries):
        if use_subgroups and entry.subgroup and entry.subgroup - 1 <= last:
            entry.cabinet = cabinets[entry.subgroup - 1]
        else:
            entry.cabinet = cabinets[min(i, last)]


def parse_group_lesson(lines: Sequence[str], cabinet_lines: Sequence[str] = (),
                       strict: bool = False) -> GroupLessonSlot:
    """
    Builds a group lesson slot from a lesson cell and its cabinet cell.

    Returns:
        A single entry when there is exactly one entry without a subgroup,
        a list for parallel subgroup entries, or None for an empty slot.

    Raises:
        LessonParseError: In strict mode, if the cell has text but no entries.
    """
    entries = parse_group_entries(lines)
    if not entries:
        if lines and strict:
            raise LessonParseError("cannot parse lesson", {"stage": "lesson", "lines": list(lines)})
        return None

    apply_cabinets(entries, cabinet_lines, by_subgroup=True)
    if len(entries) == 1 and entries[0].subgroup is None:
        return entries[0]
    return entries


def parse_teacher_lesson(lines: Sequence[str], cabinet_lines: Sequence[str] = (),
                         strict: bool = False) -> TeacherLessonSlot:
    """Builds a teacher lesson slot; a teacher holds at most one lesson per slot."""
    entries = parse_teacher_entries(lines)
    if not entries:
        if lines and strict:
            raise LessonParseError("cannot parse lesson", {"stage": "lesson", "lines": list(lines)})
        return None
    if len(entries) > 1:
        log.debug(f"Teacher slot has {len(entries)} entries, keeping the first: {list(lines)}")

    apply_cabinets(entries, cabinet_lines, by_subgroup=False)
    return entries[0]
