import json
import logging
from datetime import timedelta

import pytest

from rasp_parser.core.cache_service import CacheStore
from rasp_parser.core.date_utils import WeekIndex
from rasp_parser.core.errors import FetchError, QuarantineError, WeekJumpError
from rasp_parser.core.events import (DayEvent, ErrorEvent, EventKind,
                                     FlushCacheEvent, WeekEvent)
from rasp_parser.core.parsers import PARSERS, Family, ParserKind
from rasp_parser.core.service import ParserService
from rasp_parser.models.models import Group
from rasp_parser.tests.pages import (MONDAY, group_page, header_cells,
                                     teacher_page, timetable_table,
                                     wrap_page)

GROUP_URL = "https://college.test/rasp/groups/"
TEACHER_URL = "https://college.test/rasp/teachers/"

MATH = ("Математика (лек) Иванов И.И.", "305")
PHYSICS = ("Физика (пр) Петров П.П.", "101")
NEXT_MONDAY = MONDAY + timedelta(days=7)


def _kinds(events, kind):
    return [event for event in events if event.kind is kind]


@pytest.fixture
def pages():
    return {GROUP_URL: group_page(), TEACHER_URL: teacher_page()}


@pytest.fixture
def service(parser_config, pages, mocker, frozen_today):
    frozen_today()
    client = mocker.Mock()
    client.fetch_page = mocker.AsyncMock(side_effect=lambda url: pages[url])
    store = CacheStore(parser_config.cache_dir)
    return ParserService(parser_config, store, client)


@pytest.mark.asyncio
async def test_first_cycle_fills_cache_without_day_events(service):
    result = await service.parse()

    assert result.error is False
    groups = service.store.groups
    assert list(groups.timetable) == ["3ТО-1"]
    assert groups.content_hash is not None
    assert groups.last_week_index == WeekIndex.from_date(MONDAY).value
    assert list(service.store.teachers.timetable) == ["Иванов И.И."]
    assert service.store.success_update is True

    # New entities produce no day notifications, only the archive batch
    assert not [e for e in result.events if isinstance(e, DayEvent)]
    assert _kinds(result.events, EventKind.UPDATE_WEEK) == []
    flush = _kinds(result.events, EventKind.FLUSH_CACHE)
    assert len(flush) == 2
    assert sum(len(event.days) for event in flush) == 12
    assert service.logs[0].message.startswith("success")


# TDD Anchor: identical HTML is not parsed again
@pytest.mark.asyncio
async def test_identical_page_short_circuits(service):
    await service.parse()
    week_before = service.store.groups.last_week_index
    service.store.groups.last_week_index = None

    result = await service.parse()

    assert result.events == []
    assert service.store.groups.last_week_index is None
    assert week_before is not None


@pytest.mark.asyncio
async def test_changed_today_and_tomorrow_emit_day_events(service, pages):
    await service.parse()

    row = [MATH] * 6
    row[2] = PHYSICS  # Wednesday 10.09, today
    row[3] = PHYSICS  # Thursday 11.09, tomorrow
    row[4] = PHYSICS  # Friday, no notification
    pages[GROUP_URL] = group_page(rows=[row])

    result = await service.parse()

    day_events = [(e.kind, e.key, e.day.date) for e in result.events if isinstance(e, DayEvent)]
    assert day_events == [
        (EventKind.UPDATE_GROUP_DAY, "3ТО-1", "10.09.2025"),
        (EventKind.ADD_GROUP_DAY, "3ТО-1", "11.09.2025"),
    ]
    flush = _kinds(result.events, EventKind.FLUSH_CACHE)[0]
    assert sorted(day.day.date for day in flush.days) == ["10.09.2025", "11.09.2025", "12.09.2025"]
    assert service.store.groups.timetable["3ТО-1"].days[3].lessons[0].subject == "Физика"


@pytest.mark.asyncio
async def test_tomorrow_already_noticed_is_an_update(service, pages):
    await service.parse()
    tomorrow = service.store.groups.timetable["3ТО-1"].days[3]
    service.store.mark_noticed(Family.GROUPS, "3ТО-1", tomorrow.day_index().value)

    row = [MATH] * 6
    row[3] = PHYSICS
    pages[GROUP_URL] = group_page(rows=[row])
    result = await service.parse()

    assert [e.kind for e in result.events if isinstance(e, DayEvent)] == [EventKind.UPDATE_GROUP_DAY]


# TDD Anchor: two weeks published, the nearest future one is taken, then the page rolls over
@pytest.mark.asyncio
async def test_week_rollover_scenario(service, pages, parser_config):
    parser_config.v2.quarantine.enabled = True
    parser_config.v2.quarantine.min_lessons = 1
    week_1 = MONDAY + timedelta(days=7)
    week_2 = MONDAY + timedelta(days=14)

    pages[GROUP_URL] = wrap_page(
        timetable_table("Группа - 3ТО-1", week_1, [[MATH] * 6]),
        timetable_table("Группа - 3ТО-1", week_2, []),
    )
    pages[TEACHER_URL] = teacher_page(monday=week_1)

    first = await service.parse()

    assert first.error is False
    assert not _kinds(first.events, EventKind.ERROR)
    group = service.store.groups.timetable["3ТО-1"]
    assert group.days[0].date == week_1.strftime("%d.%m.%Y")
    assert all(day.lessons for day in group.days)
    assert service.store.groups.last_week_index == WeekIndex.from_date(week_1).value
    assert _kinds(first.events, EventKind.UPDATE_WEEK) == []

    pages[GROUP_URL] = wrap_page(timetable_table("Группа - 3ТО-1", week_2, [[PHYSICS] * 6]))

    second = await service.parse()

    week_events = _kinds(second.events, EventKind.UPDATE_WEEK)
    assert len(week_events) == 1
    assert week_events[0] == WeekEvent(chat_mode="student", week_index=WeekIndex.from_date(week_2).value)
    assert service.store.groups.last_week_index == WeekIndex.from_date(week_2).value
    assert not _kinds(second.events, EventKind.ERROR)


@pytest.mark.asyncio
async def test_week_jump_raises_error_event(service):
    current = WeekIndex.from_date(MONDAY).value
    service.store.groups.last_week_index = current - 5

    result = await service.parse()

    assert _kinds(result.events, EventKind.UPDATE_WEEK)[0].week_index == current
    errors = [e.error for e in _kinds(result.events, EventKind.ERROR)]
    assert len(errors) == 1
    assert isinstance(errors[0], WeekJumpError)
    assert errors[0].context["from"] == current - 5


@pytest.mark.asyncio
async def test_quarantine_keeps_cache_and_hash(service, parser_config):
    parser_config.v2.quarantine.enabled = True
    parser_config.v2.quarantine.min_lessons = 100

    result = await service.parse()

    assert result.error is False
    assert service.store.groups.timetable == {}
    assert service.store.groups.content_hash is None
    errors = [e.error for e in _kinds(result.events, EventKind.ERROR)]
    assert len(errors) == 2
    assert all(isinstance(error, QuarantineError) for error in errors)
    assert {error.context["family"] for error in errors} == {"groups", "teachers"}
    assert all(error.context["stage"] == "quarantine" for error in errors)
    assert all(error.context["lessons"] == 6 for error in errors)
    assert str(errors[0]).endswith("quarantined: 6 lessons, at least 100 required")


@pytest.mark.asyncio
async def test_empty_timetable_fails_cycle(service, pages):
    pages[GROUP_URL] = wrap_page("<h2>Группа - 3ТО-1</h2><p>Расписание обновляется</p>")

    result = await service.parse()

    assert result.error is True
    assert service.store.success_update is False
    assert service.logs[0].is_error
    assert service.logs[0].message == "timetable is empty"
    assert service.logs[0].result.context == {"stage": "cycle", "groups": False, "teachers": True}
    # The other family still got merged
    assert "Иванов И.И." in service.store.teachers.timetable


@pytest.mark.asyncio
async def test_fallback_parser_is_used_when_primary_finds_nothing(service, mocker):
    mocker.patch.dict(PARSERS, {ParserKind.GROUP_V2: lambda page, options: {}})

    result = await service.parse()

    assert result.error is False
    assert "3ТО-1" in service.store.groups.timetable
    assert service.metrics["student"]["parser"] == "group_v1"
    assert service.metrics["student"]["fallbackUsed"] is True
    assert service.metrics["teacher"]["parser"] == "teacher_v2"


@pytest.mark.asyncio
async def test_strict_validation_failure_is_reported(service, parser_config):
    parser_config.v2.strict = True
    parser_config.v2.max_lessons_per_day = 0

    result = await service.parse()

    assert result.error is True
    error = service.logs[0].result
    assert error.context["stage"] == "validate"
    assert error.context["parser"] == "group_v1"
    assert error.context["fallback_used"] is True
    assert error.context["family"] == "groups"
    assert service.store.groups.content_hash is None


@pytest.mark.asyncio
async def test_third_identical_failure_escalates_once(service, mocker):
    service.client.fetch_page = mocker.AsyncMock(
        side_effect=FetchError("cannot fetch page: HTTP error 503", status_code=503)
    )

    emitted = []
    for _ in range(4):
        result = await service.parse()
        assert result.error is True
        emitted.append(_kinds(result.events, EventKind.ERROR))

    assert [len(errors) for errors in emitted] == [0, 0, 1, 0]
    assert str(emitted[2][0].error) == "cannot fetch page: HTTP error 503"
    assert service.is_has_errors()


@pytest.mark.asyncio
async def test_different_failures_do_not_escalate(service, mocker):
    messages = iter(["HTTP error 500", "HTTP error 502", "HTTP error 503"])

    async def failing(url):
        raise FetchError(f"cannot fetch page: {next(messages)}")

    service.config.sync_mode = True
    service.client.fetch_page = failing
    results = [await service.parse() for _ in range(3)]

    assert all(not _kinds(result.events, EventKind.ERROR) for result in results)
    assert service.is_has_errors()


@pytest.mark.asyncio
async def test_force_parse_ignores_hash_and_clears_absent_keys(service, pages):
    await service.parse()
    pages[GROUP_URL] = group_page(label="3ТО-2")

    await service.parse()
    # Absent groups survive an ordinary cycle
    assert sorted(service.store.groups.timetable) == ["3ТО-1", "3ТО-2"]

    service.force_loop_parse(clear_keys=True)
    await service.parse()

    assert sorted(service.store.groups.timetable) == ["3ТО-2"]
    assert service.force_parse is False
    assert service.clear_keys is False


@pytest.mark.asyncio
async def test_replay_path_reads_local_files(service, parser_config, tmp_path):
    replay_dir = tmp_path / "replay"
    replay_dir.mkdir()
    (replay_dir / "groups.html").write_text(group_page(label="3ТО-9"), encoding="utf-8")
    (replay_dir / "teachers.html").write_text(teacher_page(), encoding="utf-8")
    parser_config.v2.raw_html.replay_path = str(replay_dir / "{family}.html")

    result = await service.parse()

    assert result.error is False
    assert list(service.store.groups.timetable) == ["3ТО-9"]
    service.client.fetch_page.assert_not_called()


@pytest.mark.asyncio
async def test_local_mode_loads_cache_files(service, parser_config, tmp_path):
    local_dir = tmp_path / "cache" / "local"
    local_dir.mkdir(parents=True)
    lesson = {"subject": "Математика", "teacher": "Иванов И.И."}
    (local_dir / "groups.json").write_text(json.dumps({"timetable": {
        "3ТО-1": {"group": "3ТО-1", "days": [{"date": "10.09.2025", "lessons": [lesson]}]},
    }}), encoding="utf-8")
    (local_dir / "teachers.json").write_text(json.dumps({"timetable": {
        "Иванов И.И.": {"teacher": "Иванов И.И.", "days": [
            {"date": "10.09.2025", "lessons": [{"subject": "Математика", "group": "3ТО-1"}]},
        ]},
    }}), encoding="utf-8")
    parser_config.local_mode = True

    result = await service.parse()

    assert result.error is False
    assert service.store.groups.timetable["3ТО-1"].days[0].lessons[0].subject == "Математика"
    assert service.metrics["student"]["parser"] == "local"
    service.client.fetch_page.assert_not_called()


@pytest.mark.asyncio
async def test_raw_html_snapshots_are_written(service, parser_config, tmp_path):
    parser_config.v2.raw_html.enabled = True

    await service.parse()

    groups_dir = tmp_path / "raw" / "groups"
    assert (groups_dir / "last_good.html").exists()
    assert (tmp_path / "raw" / "teachers" / "last_good.html").exists()


@pytest.mark.asyncio
async def test_cycle_saves_cache(service, parser_config, tmp_path):
    await service.parse()

    saved = json.loads((tmp_path / "cache" / "groups.json").read_text(encoding="utf-8"))
    assert "3ТО-1" in saved["timetable"]
    assert saved["contentHash"] == service.store.groups.content_hash


@pytest.mark.asyncio
async def test_flush_cache_emits_all_days(service):
    await service.parse()

    event = service.flush_cache()

    assert isinstance(event, FlushCacheEvent)
    assert len(event.days) == 12
    assert {day.type for day in event.days} == {"group", "teacher"}
    assert event in service.events.pending


@pytest.mark.asyncio
async def test_error_event_text_names_family_and_url(service, mocker):
    service.client.fetch_page = mocker.AsyncMock(side_effect=FetchError("cannot fetch page: HTTP error 404"))
    for _ in range(3):
        result = await service.parse()

    event = _kinds(result.events, EventKind.ERROR)[0]
    assert isinstance(event, ErrorEvent)
    assert event.context["family"] == "groups"
    assert event.context["url"] == GROUP_URL
    assert '"family": "groups"' in event.text


@pytest.mark.asyncio
async def test_date_printed_twice_is_stored_once(service, pages):
    header = f'<th colspan="2">Понедельник, {MONDAY:%d.%m.%Y}</th>{header_cells(MONDAY)}'
    cells = "".join(f"<td>{MATH[0]}</td><td>{MATH[1]}</td>" for _ in range(7))
    pages[GROUP_URL] = wrap_page(
        f"<h2>Группа - 3ТО-1</h2>\n<table><tr><th>№</th>{header}</tr><tr><td>1</td>{cells}</tr></table>"
    )

    result = await service.parse()

    assert result.error is False
    dates = [day.date for day in service.store.groups.timetable["3ТО-1"].days]
    assert dates == [f"{day:02d}.09.2025" for day in range(8, 14)]


@pytest.mark.asyncio
async def test_current_policy_keeps_fallback_days_of_another_week(service, pages, parser_config):
    parser_config.v2.week_policy = "current"
    pages[GROUP_URL] = group_page(monday=NEXT_MONDAY)

    result = await service.parse()

    assert result.error is False
    assert service.metrics["student"]["parser"] == "group_v1"
    dates = [day.date for day in service.store.groups.timetable["3ТО-1"].days]
    assert dates == [f"{day}.09.2025" for day in range(15, 21)]


@pytest.mark.asyncio
async def test_current_policy_drops_other_weeks(service, pages, parser_config, mocker):
    parser_config.v2.week_policy = "current"
    mocker.patch.dict(PARSERS, {ParserKind.GROUP_V2: lambda page, options: {}})
    lessons = [[("Математика<br>(лек)<br>Иванов И.И.", "305")] * 6]
    pages[GROUP_URL] = wrap_page(
        timetable_table("Группа - 3ТО-1", MONDAY, lessons),
        timetable_table("Группа - 3ТО-1", NEXT_MONDAY, lessons),
    )

    await service.parse()

    dates = [day.date for day in service.store.groups.timetable["3ТО-1"].days]
    assert dates == [f"{day:02d}.09.2025" for day in range(8, 14)]


@pytest.mark.asyncio
async def test_past_days_are_pruned_and_archived(service, pages, frozen_today):
    await service.parse()
    frozen_today(NEXT_MONDAY)
    pages[GROUP_URL] = group_page(monday=NEXT_MONDAY)

    result = await service.parse()

    dates = [day.date for day in service.store.groups.timetable["3ТО-1"].days]
    assert dates == [f"{day}.09.2025" for day in range(15, 21)]
    flush = _kinds(result.events, EventKind.FLUSH_CACHE)
    assert len(flush) == 1
    archived = sorted(day.day.date for day in flush[0].days)
    assert archived == [f"{day:02d}.09.2025" for day in range(8, 14)] + dates


@pytest.mark.parametrize("preserve, kept_past", [
    (True, ["08.09.2025", "09.09.2025"]),
    (False, []),
])
@pytest.mark.asyncio
async def test_current_week_kept_while_site_lacks_it(service, pages, parser_config, preserve, kept_past):
    parser_config.v2.preserve_current_week = preserve
    await service.parse()
    pages[GROUP_URL] = group_page(monday=NEXT_MONDAY)

    await service.parse()

    dates = [day.date for day in service.store.groups.timetable["3ТО-1"].days]
    assert dates == kept_past + [f"{day}.09.2025" for day in range(10, 14)] + [
        f"{day}.09.2025" for day in range(15, 21)
    ]


@pytest.mark.asyncio
async def test_entity_without_days_and_absent_from_page_is_removed(service, pages, frozen_today):
    await service.parse()
    frozen_today(NEXT_MONDAY)
    pages[GROUP_URL] = group_page(monday=NEXT_MONDAY, label="3ТО-2")

    await service.parse()

    assert list(service.store.groups.timetable) == ["3ТО-2"]


@pytest.mark.asyncio
async def test_diff_log_compares_with_legacy_parser(service, parser_config, mocker, caplog):
    parser_config.v2.diff_log = True
    parser_config.v2.diff_log_limit = 2
    legacy = {key: Group(group=key) for key in ("3ТО-7", "3ТО-8", "3ТО-9")}
    mocker.patch.dict(PARSERS, {ParserKind.GROUP_V1: lambda page, options: legacy})

    with caplog.at_level(logging.INFO, logger="rasp_parser.core.service"):
        result = await service.parse()

    assert result.error is False
    lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Diff group_v2/group_v1:")]
    assert lines == [
        "Diff group_v2/group_v1: 3ТО-1: only in current",
        "Diff group_v2/group_v1: 3ТО-7: only in previous",
    ]
    assert list(service.store.groups.timetable) == ["3ТО-1"]
    assert service.metrics["student"]["parser"] == "group_v2"


@pytest.mark.asyncio
async def test_diff_log_survives_legacy_failure(service, parser_config, mocker, caplog):
    parser_config.v2.diff_log = True
    mocker.patch.dict(PARSERS, {ParserKind.GROUP_V1: mocker.Mock(side_effect=ValueError("broken table"))})

    result = await service.parse()

    assert result.error is False
    assert "3ТО-1" in service.store.groups.timetable
    assert "Diff log: group_v1 failed: broken table" in caplog.text
