from datetime import timedelta

import pytest

from rasp_parser.core.config import V2Config
from rasp_parser.core.errors import StructureError
from rasp_parser.core.page import TimetablePage
from rasp_parser.core.parsers import (Family, ParserKind, parse_groups_v2,
                                      parse_teachers_v2, parser_chain,
                                      run_parser)
from rasp_parser.models.models import GroupLessonEntry
from rasp_parser.tests.pages import (MONDAY, group_page, header_cells,
                                     teacher_page, timetable_table,
                                     wrap_page)

NEXT_MONDAY = MONDAY + timedelta(days=7)


@pytest.fixture(autouse=True)
def _today(frozen_today):
    frozen_today()


def test_parse_groups_v2_basic_page():
    result = parse_groups_v2(TimetablePage(group_page()), V2Config())

    assert list(result) == ["3ТО-1"]
    group = result["3ТО-1"]
    assert group.group == "3ТО-1*"
    assert [day.date for day in group.days] == [
        "08.09.2025", "09.09.2025", "10.09.2025", "11.09.2025", "12.09.2025", "13.09.2025",
    ]
    lesson = group.days[0].lessons[0]
    assert isinstance(lesson, GroupLessonEntry)
    assert (lesson.subject, lesson.type, lesson.teacher, lesson.cabinet) == ("Математика", "лек", "Иванов И.И.", "305")


def test_parse_groups_v2_places_lessons_by_number():
    rows = [
        [],
        [("Физика (пр) Петров П.П.", "101")],
    ]
    group = parse_groups_v2(TimetablePage(group_page(rows=rows)), V2Config())["3ТО-1"]

    monday = group.days[0]
    assert monday.lessons[0] is None
    assert monday.lessons[1].subject == "Физика"
    assert group.days[1].lessons == []


def test_parse_groups_v2_collapses_double_lesson():
    rows = [
        [("A (ф-в) Иванов И.И.", "1")],
        [("B (лек) Петров П.П.", "2")],
        [("A (ф-в) Иванов И.И.", "1")],
    ]
    monday = parse_groups_v2(TimetablePage(group_page(rows=rows)), V2Config())["3ТО-1"].days[0]

    assert len(monday.lessons) == 2
    assert monday.lessons[0].comment == "2 часа"


def test_parse_teachers_v2_basic_page():
    result = parse_teachers_v2(TimetablePage(teacher_page()), V2Config())

    teacher = result["Иванов И.И."]
    lesson = teacher.days[0].lessons[0]
    assert (lesson.group, lesson.subject, lesson.type, lesson.cabinet) == ("3ТО-1", "Математика", "лек", "305")


def test_lesson_cell_spanning_cabinet_column_has_no_cabinet():
    header = f"<tr><th>№</th>{header_cells(MONDAY)}</tr>"
    row = '<tr><td>1</td><td colspan="2">Математика (лек) Иванов И.И.</td>' + "<td></td><td></td>" * 5 + "</tr>"
    html = wrap_page(f"<h2>Группа - 3ТО-1</h2><table>{header}{row}</table>")

    lesson = parse_groups_v2(TimetablePage(html), V2Config())["3ТО-1"].days[0].lessons[0]
    assert lesson.subject == "Математика"
    assert lesson.cabinet is None


def test_week_policy_selects_current_week_table():
    rows = [[("Физика (пр) Петров П.П.", "101")] * 6]
    html = wrap_page(
        timetable_table("Группа - 3ТО-1", NEXT_MONDAY, rows),
        timetable_table("Группа - 3ТО-1", MONDAY, rows),
    )
    group = parse_groups_v2(TimetablePage(html), V2Config())["3ТО-1"]
    assert group.days[0].date == "08.09.2025"
    assert len(group.days) == 6


def test_two_tables_of_one_week_are_merged():
    first = [[("Математика (лек) Иванов И.И.", "305")] * 6]
    second = [[("Физика (пр) Петров П.П.", "101")] * 6]
    html = wrap_page(
        timetable_table("Группа - 3ТО-1", MONDAY, first),
        timetable_table("Группа - 3ТО-1*", MONDAY, second),
    )

    merged = parse_groups_v2(TimetablePage(html), V2Config())["3ТО-1"]
    assert len(merged.days) == 6
    assert merged.days[0].lessons[0].subject == "Физика"

    single = parse_groups_v2(TimetablePage(html), V2Config(allow_two_tables=False))["3ТО-1"]
    assert single.days[0].lessons[0].subject == "Математика"


def test_several_groups_on_one_page():
    html = wrap_page(
        timetable_table("Группа - 3ТО-1", MONDAY, [[("Математика (лек) Иванов И.И.", "305")]]),
        timetable_table("Группа - 3ТО-2", MONDAY, [[("Физика (пр) Петров П.П.", "101")]]),
    )
    result = parse_groups_v2(TimetablePage(html), V2Config())
    assert sorted(result) == ["3ТО-1", "3ТО-2"]
    assert result["3ТО-2"].days[0].lessons[0].teacher == "Петров П.П."


def test_table_without_heading_is_skipped():
    html = wrap_page(
        "<table>" + f"<tr><th>№</th>{header_cells(MONDAY)}</tr>" + "</table>",
    )
    assert parse_groups_v2(TimetablePage(html), V2Config()) == {}


def test_strict_mode_single_table_without_header():
    html = wrap_page("<h2>Группа - 3ТО-1</h2><table><tr><td>нет расписания</td></tr></table>")

    assert parse_groups_v2(TimetablePage(html), V2Config()) == {}
    with pytest.raises(StructureError) as exc_info:
        parse_groups_v2(TimetablePage(html), V2Config(strict=True))
    assert exc_info.value.context["stage"] == "header"


def test_parser_chain():
    assert parser_chain(Family.GROUPS, V2Config()) == [ParserKind.GROUP_V2, ParserKind.GROUP_V1]
    assert parser_chain(Family.TEACHERS, V2Config(fallback_to_v1=False)) == [ParserKind.TEACHER_V2]
    assert parser_chain(Family.GROUPS, V2Config(enabled=False)) == [ParserKind.GROUP_V1]


def test_parser_kind_lookup_by_value():
    assert ParserKind("group_v2") is ParserKind.GROUP_V2
    with pytest.raises(ValueError):
        ParserKind("group_v3")


def test_run_parser_accepts_raw_html():
    result = run_parser(ParserKind.TEACHER_V2, teacher_page(), V2Config())
    assert list(result) == ["Иванов И.И."]


def test_v1_and_v2_agree_on_simple_page():
    html = group_page()
    v1 = run_parser(ParserKind.GROUP_V1, html, V2Config())
    v2 = run_parser(ParserKind.GROUP_V2, html, V2Config())
    assert v1["3ТО-1"].model_dump() == v2["3ТО-1"].model_dump()
