# rasp_parser/core/parsers.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type, Union

from .config import V2Config
from .errors import LessonParseError, StructureError
from .grid import GridCell, TableGrid, build_table_grid, cell_text, locate_header
from .diff_service import merge_days
from .lessons import parse_group_lesson, parse_teacher_lesson
from .page import TimetablePage, find_table_heading, label_after_dash
from .postprocess import assign_lesson, clear_sundays, post_process_day
from .text import extract_lines, parse_lesson_number
from .week_policy import TableCandidate, select_tables
from . import legacy
from .constants import GROUP_HEADING_KEYWORD, TEACHER_HEADING_KEYWORD
from ..models.models import Entity, Group, GroupDay, Teacher, TeacherDay

log = logging.getLogger(__name__)


class Family(str, Enum):
    """Entity families, named after their cache files."""
    GROUPS = "groups"
    TEACHERS = "teachers"


class ParserKind(str, Enum):
    GROUP_V1 = "group_v1"
    TEACHER_V1 = "teacher_v1"
    GROUP_V2 = "group_v2"
    TEACHER_V2 = "teacher_v2"


@dataclass(frozen=True)
class _Variant:
    """What differs between group and teacher tables."""
    keyword: str
    counterpart_field: str
    day_cls: Type
    parse_slot: Callable
    make_entity: Callable[[str], Entity]
    make_key: Callable[[str], str]


GROUP_VARIANT = _Variant(
    keyword=GROUP_HEADING_KEYWORD,
    counterpart_field="teacher",
    day_cls=GroupDay,
    parse_slot=parse_group_lesson,
    make_entity=lambda label: Group(group=label),
    make_key=lambda label: label.rstrip("*").strip(),
)

TEACHER_VARIANT = _Variant(
    keyword=TEACHER_HEADING_KEYWORD,
    counterpart_field="group",
    day_cls=TeacherDay,
    parse_slot=parse_teacher_lesson,
    make_entity=lambda label: Teacher(teacher=label),
    make_key=lambda label: label,
)


def _own_cell(grid: TableGrid, row: int, col: int) -> Optional[GridCell]:
    """Cell at (row, col) unless it is a rowspan continuation from an earlier row."""
    cell = grid.at(row, col)
    if cell is None or cell.row != row:
        return None
    return cell


def collect_candidates(page: TimetablePage, options: V2Config) -> List[TableCandidate]:
    """
    Runs grid building and header detection on every table of the page.

    Raises:
        StructureError: In strict mode, when the page's only table has no header.
    """
    tables = page.tables
    candidates: List[TableCandidate] = []
    for table in tables:
        grid = build_table_grid(table)
        located = locate_header(grid, options.header_scan_rows, options.min_days_in_table)
        if located is None:
            log.debug(f"Skipping table without day header ({grid.height}x{grid.width})")
            continue
        header_index, ranges = located
        candidates.append(TableCandidate(table=table, grid=grid, header_index=header_index, ranges=ranges))

    if options.strict and len(tables) == 1 and not candidates:
        raise StructureError("no header found", {"stage": "header", "url": page.url})
    return candidates


def parse_candidate(candidate: TableCandidate, variant: _Variant,
                    options: V2Config) -> Optional[Tuple[str, Entity]]:
    """
    Parses one accepted table into (key, entity).

    Returns:
        None if the table has no recognizable heading.

    Raises:
        LessonParseError: In strict mode, for an unparseable lesson cell.
    """
    heading = find_table_heading(candidate.table, variant.keyword)
    label = label_after_dash(heading) if heading else None
    if not label:
        log.warning(f"Table for {candidate.ranges[0].day} has no '{variant.keyword}' heading, skipped")
        return None

    grid = candidate.grid
    days = [variant.day_cls(date=day_range.day, lessons=[]) for day_range in candidate.ranges]

    for row_index in range(candidate.header_index + 1, grid.height):
        number_cell = _own_cell(grid, row_index, 0)
        number = parse_lesson_number(cell_text(number_cell)) if number_cell else None
        if number is None:
            continue

        for day, day_range in zip(days, candidate.ranges):
            lesson_cell = _own_cell(grid, row_index, day_range.start)
            if lesson_cell is None:
                continue
            lines = extract_lines(lesson_cell.source)
            if not lines:
                continue

            cabinet_lines: List[str] = []
            if day_range.span > 1:
                cabinet_cell = _own_cell(grid, row_index, day_range.start + 1)
                # A lesson cell spanning the cabinet column has no separate cabinet
                if cabinet_cell is not None and cabinet_cell.source is not lesson_cell.source:
                    cabinet_lines = extract_lines(cabinet_cell.source)

            try:
                slot = variant.parse_slot(lines, cabinet_lines, options.strict)
            except LessonParseError as e:
                raise e.with_context(key=label, date=day.date, lesson=number)
            assign_lesson(day.lessons, number, slot)

    for day in days:
        post_process_day(day, variant.counterpart_field, options.double_lesson_type)

    entity = variant.make_entity(label)
    entity.days = clear_sundays(days)
    return variant.make_key(label), entity


def _parse_v2(page: TimetablePage, variant: _Variant, options: V2Config) -> Dict[str, Entity]:
    candidates = collect_candidates(page, options)
    selected = select_tables(candidates, options.week_policy, options.sunday_hold_current)
    log.debug(f"{len(selected)} of {len(candidates)} tables selected on {page.url}")

    result: Dict[str, Entity] = {}
    for candidate in selected:
        parsed = parse_candidate(candidate, variant, options)
        if parsed is None:
            continue
        key, entity = parsed
        existing = result.get(key)
        if existing is None:
            result[key] = entity
        elif options.allow_two_tables:
            existing.days = merge_days(entity.days, existing.days).merged_days
        else:
            log.info(f"Second table for '{key}' discarded")
    return result


def parse_groups_v2(page: TimetablePage, options: V2Config) -> Dict[str, Entity]:
    return _parse_v2(page, GROUP_VARIANT, options)


def parse_teachers_v2(page: TimetablePage, options: V2Config) -> Dict[str, Entity]:
    return _parse_v2(page, TEACHER_VARIANT, options)


ParserFunc = Callable[[TimetablePage, V2Config], Dict[str, Entity]]

PARSERS: Dict[ParserKind, ParserFunc] = {
    ParserKind.GROUP_V1: legacy.parse_groups_v1,
    ParserKind.TEACHER_V1: legacy.parse_teachers_v1,
    ParserKind.GROUP_V2: parse_groups_v2,
    ParserKind.TEACHER_V2: parse_teachers_v2,
}

# (v2 kind, v1 kind) per family
FAMILY_PARSERS: Dict[Family, Tuple[ParserKind, ParserKind]] = {
    Family.GROUPS: (ParserKind.GROUP_V2, ParserKind.GROUP_V1),
    Family.TEACHERS: (ParserKind.TEACHER_V2, ParserKind.TEACHER_V1),
}

V2_KINDS = frozenset({ParserKind.GROUP_V2, ParserKind.TEACHER_V2})


def parser_chain(family: Family, options: V2Config) -> List[ParserKind]:
    """Primary parser first, then the fallback (if any)."""
    v2_kind, v1_kind = FAMILY_PARSERS[family]
    if options.enabled:
        return [v2_kind, v1_kind] if options.fallback_to_v1 else [v2_kind]
    return [v1_kind]


def run_parser(kind: ParserKind, page: Union[TimetablePage, str], options: V2Config) -> Dict[str, Entity]:
    """Runs the parser registered for `kind` on a page or raw HTML."""
    if isinstance(page, str):
        page = TimetablePage(page)
    return PARSERS[kind](page, options)
