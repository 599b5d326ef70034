# rasp_parser/core/legacy.py
"""
Legacy (v1) timetable parsers.

They expect the layout the site used before merged cells appeared: an <h2>
heading right before every table, the first row listing "Weekday, dd.mm.yyyy"
cells (colspan 2: lesson + cabinet) and one row per lesson number. Rowspans
are not supported. Lesson text is split on <br> with regular expressions.
"""
import html
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple

from bs4 import Tag

from .config import V2Config
from .diff_service import merge_days
from .grid import iter_table_rows
from .postprocess import assign_lesson, clear_sundays, post_process_day
from .text import clean_text, is_teacher_line, normalize_date, remove_dashes
from ..models.models import (Entity, Group, GroupDay, GroupLessonEntry, Teacher,
                             TeacherDay, TeacherLessonEntry)

log = logging.getLogger(__name__)

GROUP_HEADING_RE = re.compile(r"Группа\s*-\s*(.+)", re.IGNORECASE)
TEACHER_HEADING_RE = re.compile(r"Преподаватель\s*-\s*(.+)", re.IGNORECASE)
DAY_NAME_RE = re.compile(r"^(.+?),\s?(\d{1,2}\.\d{1,2}\.\d{2,4})$")
LESSON_NUMBER_RE = re.compile(r"^\s*(\d+)")
BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
TAG_RE = re.compile(r"<[^>]+>")

SUBJECT_RE = re.compile(r"^(?:(\d)\.\s*)?(.+?)(?:\s*\(([^)]+)\))?$")
TYPE_ONLY_RE = re.compile(r"^\(([^)]+)\)$")
GROUP_LINE_RE = re.compile(r"^(?:(\d)\.)?\s*(\S+)\s+-\s+(.+?)(?:\s*\(([^)]+)\))?$")


def _cell_lines(cell: Tag) -> List[str]:
    parts = BR_RE.split(cell.decode_contents())
    lines = [clean_text(html.unescape(TAG_RE.sub(" ", part))) for part in parts]
    return [line for line in lines if line]


def _positioned_cells(tr: Tag) -> List[Tuple[int, int, Tag]]:
    """(column, colspan, cell) for every cell of the row; rowspans are ignored."""
    cells = []
    col = 0
    for td in tr.find_all(["td", "th"], recursive=False):
        try:
            span = max(1, int(td.get("colspan", 1)))
        except ValueError:
            span = 1
        cells.append((col, span, td))
        col += span
    return cells


def _heading(table: Tag, pattern: re.Pattern) -> Optional[str]:
    h2 = table.find_previous_sibling("h2")
    if h2 is None:
        return None
    match = pattern.search(clean_text(h2.get_text()))
    return clean_text(match.group(1)) if match else None


def _group_entries(lines: List[str]) -> List[GroupLessonEntry]:
    entries: List[GroupLessonEntry] = []
    for line in lines:
        last = entries[-1] if entries else None
        type_only = TYPE_ONLY_RE.match(line)
        if last and type_only and not last.type:
            last.type = type_only.group(1)
        elif last and is_teacher_line(line):
            last.teacher = f"{last.teacher}, {line}" if last.teacher else line
        elif last and last.teacher is None and not SUBJECT_RE.match(line).group(3):
            last.teacher = line
        else:
            subgroup, subject, lesson_type = SUBJECT_RE.match(line).groups()
            entries.append(GroupLessonEntry(
                subgroup=int(subgroup) if subgroup else None,
                subject=subject,
                type=lesson_type,
            ))
    return entries


def _teacher_entries(lines: List[str]) -> List[TeacherLessonEntry]:
    entries: List[TeacherLessonEntry] = []
    for line in lines:
        match = GROUP_LINE_RE.match(line)
        if not match:
            continue
        subgroup, group, subject, lesson_type = match.groups()
        entries.append(TeacherLessonEntry(
            subgroup=int(subgroup) if subgroup else None,
            group=group,
            subject=subject,
            type=lesson_type,
        ))
    return entries


def _group_slot(entries: List[GroupLessonEntry]):
    if len(entries) == 1 and entries[0].subgroup is None:
        return entries[0]
    return entries or None


def _teacher_slot(entries: List[TeacherLessonEntry]):
    return entries[0] if entries else None


def _parse_tables(
    page,
    heading_re: re.Pattern,
    day_cls,
    entries_from_lines: Callable[[List[str]], list],
    to_slot: Callable,
    make_entity: Callable[[str], Entity],
    make_key: Callable[[str], str],
    counterpart_field: str,
    options: V2Config,
) -> Dict[str, Entity]:
    result: Dict[str, Entity] = {}

    for table in page.tables:
        label = _heading(table, heading_re)
        rows = list(iter_table_rows(table))
        if not label or not rows:
            continue

        days = []
        for col, span, cell in _positioned_cells(rows[0]):
            match = DAY_NAME_RE.match(clean_text(cell.get_text()))
            date_str = normalize_date(match.group(2)) if match else None
            if date_str:
                days.append((col, span, day_cls(date=date_str, lessons=[])))
        if not days:
            log.debug(f"Legacy: table '{label}' has no day header")
            continue

        for tr in rows[1:]:
            cells = _positioned_cells(tr)
            if not cells:
                continue
            number_match = LESSON_NUMBER_RE.match(clean_text(cells[0][2].get_text()))
            if not number_match:
                continue
            number = int(number_match.group(1))
            by_col = {col: cell for col, _, cell in cells}

            for col, span, day in days:
                cell = by_col.get(col)
                lines = _cell_lines(cell) if cell is not None else []
                entries = entries_from_lines(lines) if lines else []
                if not entries:
                    continue
                cabinet_cell = by_col.get(col + 1) if span > 1 else None
                cabinets = [remove_dashes(line) for line in _cell_lines(cabinet_cell)] if cabinet_cell else []
                for i, entry in enumerate(entries):
                    if cabinets:
                        entry.cabinet = cabinets[min(i, len(cabinets) - 1)]
                assign_lesson(day.lessons, number, to_slot(entries))

        parsed_days = clear_sundays(
            [post_process_day(day, counterpart_field, options.double_lesson_type) for _, _, day in days]
        )
        key = make_key(label)
        existing = result.get(key)
        if existing is None:
            entity = make_entity(label)
            entity.days = parsed_days
            result[key] = entity
        elif options.allow_two_tables:
            existing.days = merge_days(parsed_days, existing.days).merged_days
        else:
            log.info(f"Legacy: second table for '{key}' discarded")

    return result


def parse_groups_v1(page, options: V2Config) -> Dict[str, Entity]:
    return _parse_tables(
        page, GROUP_HEADING_RE, GroupDay, _group_entries, _group_slot,
        make_entity=lambda label: Group(group=label),
        make_key=lambda label: label.rstrip("*").strip(),
        counterpart_field="teacher",
        options=options,
    )


def parse_teachers_v1(page, options: V2Config) -> Dict[str, Entity]:
    return _parse_tables(
        page, TEACHER_HEADING_RE, TeacherDay, _teacher_entries, _teacher_slot,
        make_entity=lambda label: Teacher(teacher=label),
        make_key=lambda label: label,
        counterpart_field="group",
        options=options,
    )
