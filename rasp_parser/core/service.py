# rasp_parser/core/service.py
import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
from cachetools import TTLCache

from .cache_service import CacheStore
from .client import AsyncPageClient
from .config import ParserConfig
from .constants import LOG_COUNT_SEND, LOG_LIMIT
from . import date_utils
from .date_utils import WeekIndex
from .diff_service import (classify_day_event, diff_entity_maps, max_week_index,
                           merge_days, min_day_index, should_keep_day)
from .errors import (EmptyTimetableError, QuarantineError, RaspError,
                     ValidationFailedError, WeekJumpError)
from .events import (ARCHIVE_TYPES, CHAT_MODES, DAY_EVENT_KINDS, ArchivedDay,
                     DayEvent, ErrorEvent, Event, EventBus, FlushCacheEvent,
                     WeekEvent)
from .page import TimetablePage
from .parsers import (FAMILY_PARSERS, PARSERS, Family, ParserKind, V2_KINDS,
                      parser_chain)
from .snapshot import RawHtmlStore
from .team import parse_team_html
from .validate import total_lessons, validate_entities
from .week_policy import select_week
from ..models.models import Entity, GroupsCache, TeachersCache

log = logging.getLogger(__name__)


@dataclass
class ParseOutcome:
    """Result of running the parser chain on one page."""
    entities: Dict[str, Entity]
    parser: Optional[ParserKind] = None
    fallback_used: bool = False


@dataclass
class LogEntry:
    date: float
    result: Union[str, BaseException]

    @property
    def is_error(self) -> bool:
        return isinstance(self.result, BaseException)

    @property
    def message(self) -> str:
        return str(self.result)


@dataclass
class CycleResult:
    """What one parse cycle produced."""
    error: bool
    duration: float
    events: List[Event] = field(default_factory=list)


class ParserService:
    """
    Runs parse cycles: fetches the group and teacher timetables (and the
    staff roster now and then), merges them into the cache store and emits
    change events.

    Only one cycle runs at a time; `force_loop_parse()` wakes a waiting
    `run_loop()` instead of starting a parallel cycle.
    """

    def __init__(
        self,
        config: ParserConfig,
        store: CacheStore,
        client: Optional[AsyncPageClient] = None,
        events: Optional[EventBus] = None,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.events = events or EventBus()
        self.logs: List[LogEntry] = []
        self.metrics: Dict[str, Dict[str, Any]] = {}
        self.force_parse = False
        self.clear_keys = False

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        # Roster refresh gate: the key lives for `teams` seconds after a team parse
        self._team_gate: TTLCache = TTLCache(maxsize=1, ttl=config.update_interval.teams)
        self._snapshots = {
            family: RawHtmlStore(config.v2.raw_html, family.value) for family in Family
        }

    # --- Loading pages ---

    def _url(self, family: Family) -> str:
        endpoints = self.config.endpoints
        return endpoints.timetable_group if family == Family.GROUPS else endpoints.timetable_teacher

    async def _fetch(self, url: str) -> str:
        if self.client is None:
            raise RaspError("no HTTP client configured", {"stage": "fetch", "url": url})
        return await self.client.fetch_page(url)

    async def _load_html(self, family: Family, url: str) -> str:
        replay = self.config.v2.raw_html.replay_path
        if replay:
            path = replay.format(family=family.value)
            log.info(f"Replaying {family.value} page from {path}")
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return await f.read()
        return await self._fetch(url)

    async def _load_local(self, family: Family) -> Dict[str, Entity]:
        path = Path(self.config.cache_dir) / "local" / f"{family.value}.json"
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
        model = GroupsCache if family == Family.GROUPS else TeachersCache
        return dict(model.model_validate(data).timetable)

    # --- Parsing ---

    def _parse_page(self, family: Family, page: TimetablePage) -> ParseOutcome:
        """
        Runs the primary parser and, if it fails, returns nothing or fails
        validation, the fallback parser.

        Raises:
            RaspError: The last failure when no parser produced a usable result.
        """
        v2 = self.config.v2
        chain = parser_chain(family, v2)
        last_error: Optional[BaseException] = None

        for position, kind in enumerate(chain):
            fallback_used = position > 0
            context = {"parser": kind.value, "fallback_used": fallback_used}
            try:
                entities = PARSERS[kind](page, v2)
            except Exception as e:
                log.warning(f"Parser {kind.value} failed on {page.url}: {e}", exc_info=not isinstance(e, RaspError))
                if isinstance(e, RaspError):
                    e.with_context(**context)
                last_error = e
                continue

            if not entities:
                log.warning(f"Parser {kind.value} found nothing on {page.url}")
                continue

            if v2.strict:
                errors = validate_entities(entities, v2.max_lessons_per_day, v2.validation_sample)
                if errors:
                    last_error = ValidationFailedError(
                        f"{kind.value} validation failed: {'; '.join(errors)}",
                        errors,
                        {**context, "stage": "validate", "validation_errors": errors},
                    )
                    log.warning(str(last_error))
                    continue

            if fallback_used:
                log.info(f"Fallback parser {kind.value} used for {family.value}")
            return ParseOutcome(entities=entities, parser=kind, fallback_used=fallback_used)

        if last_error is not None:
            raise last_error
        return ParseOutcome(entities={}, fallback_used=len(chain) > 1)

    def _log_parser_diff(self, family: Family, page: TimetablePage, outcome: ParseOutcome) -> None:
        legacy_kind = FAMILY_PARSERS[family][1]
        try:
            legacy = PARSERS[legacy_kind](page, self.config.v2)
        except Exception as e:
            log.warning(f"Diff log: {legacy_kind.value} failed: {e}")
            return
        lines = diff_entity_maps(outcome.entities, legacy, self.config.v2.diff_log_limit)
        for line in lines:
            log.warning(f"Diff {outcome.parser.value}/{legacy_kind.value}: {line}")
        if not lines:
            log.info(f"Diff {outcome.parser.value}/{legacy_kind.value}: no differences")

    def _quarantined(self, outcome: ParseOutcome, context: Dict[str, Any]) -> bool:
        quarantine = self.config.v2.quarantine
        if not quarantine.enabled or outcome.parser not in V2_KINDS:
            return False
        lessons = total_lessons(outcome.entities)
        if lessons >= quarantine.min_lessons:
            return False

        error = QuarantineError(
            f"{context['family']} quarantined: {lessons} lessons, at least {quarantine.min_lessons} required",
            {**context, "stage": "quarantine", "parser": outcome.parser.value,
             "fallback_used": outcome.fallback_used, "lessons": lessons},
        )
        log.warning(str(error))
        self.events.emit(ErrorEvent(error))
        return True

    async def _write_metrics(self, family: Family, outcome: ParseOutcome, started: float,
                             content_hash: Optional[str]) -> None:
        metrics = {
            "parser": outcome.parser.value if outcome.parser else "local",
            "fallbackUsed": outcome.fallback_used,
            "durationMs": round((time.monotonic() - started) * 1000),
            "entities": len(outcome.entities),
            "lessons": total_lessons(outcome.entities),
            "hash": content_hash,
            "at": time.time(),
        }
        chat_mode = CHAT_MODES[family]
        self.metrics[chat_mode] = metrics

        config = self.config.v2.metrics
        if not config.enabled:
            return
        folder = Path(config.dir)
        folder.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(folder / f"{chat_mode}.json", "w", encoding="utf-8") as f:
            await f.write(json.dumps(metrics, ensure_ascii=False, indent=2))

    async def parse_timetable(self, family: Family) -> bool:
        """
        Fetches, parses and merges one family's timetable.

        Returns:
            False if the timetable came out empty, True otherwise (including
            an unchanged page and a quarantined parse).

        Raises:
            RaspError: Fetch, structure, parse or validation failures, with
                the stage, url, hash and parser in the error context.
        """
        context: Dict[str, Any] = {"family": family.value, "url": self._url(family)}
        try:
            return await self._parse_timetable(family, context)
        except RaspError as e:
            raise e.with_context(**context)

    async def _parse_timetable(self, family: Family, context: Dict[str, Any]) -> bool:
        entry = self.store.entry(family)
        started = time.monotonic()
        content_hash: Optional[str] = None

        if self.config.local_mode:
            outcome = ParseOutcome(entities=await self._load_local(family))
        else:
            url = context["url"]
            html = await self._load_html(family, url)
            page = TimetablePage(html, url)
            page.check_structure()

            content_hash = page.content_hash(self.config.v2.hash_mode)
            context["hash"] = content_hash
            if not (self.config.ignore_hash or self.force_parse) and content_hash == entry.content_hash:
                log.info(f"{family.value}: page unchanged (hash {content_hash[:12]})")
                entry.last_update = time.time()
                return True
            if content_hash != entry.content_hash:
                entry.last_changed = time.time()

            snapshots = self._snapshots[family]
            try:
                outcome = self._parse_page(family, page)
            except RaspError:
                await snapshots.save(html, "bad")
                raise

            if self.config.v2.diff_log and outcome.parser in V2_KINDS:
                self._log_parser_diff(family, page, outcome)

            if self._quarantined(outcome, context):
                await snapshots.save(html, "bad")
                return True
            await snapshots.save(html, "good")

        if not outcome.entities:
            return False

        await self._write_metrics(family, outcome, started, content_hash)
        self._apply(family, outcome.entities)
        if content_hash is not None:
            entry.content_hash = content_hash
        entry.last_update = time.time()
        log.info(
            f"{family.value}: {len(outcome.entities)} entities via "
            f"{outcome.parser.value if outcome.parser else 'local file'}"
        )
        return True

    # --- Merging ---

    def _filter_week(self, data: Dict[str, Entity]) -> None:
        """
        Keeps only the days of the week chosen by the week policy. An entity
        the filter would leave empty keeps its parsed days.
        """
        v2 = self.config.v2
        weeks = sorted({day.week_index().value for entity in data.values() for day in entity.days})
        selected = select_week(
            weeks, v2.week_policy, WeekIndex.now().value,
            is_sunday=date_utils.today().weekday() == 6, hold_current_on_sunday=v2.sunday_hold_current,
        )
        if selected is None:
            log.info("No week matches the week policy, keeping parsed days")
            return
        for entity in data.values():
            filtered = [day for day in entity.days if day.week_index().value == selected]
            if filtered:
                entity.days = filtered

    def _emit_day(self, family: Family, key: str, entity: Entity, day, changed: bool) -> None:
        action = classify_day_event(day, changed, entity.last_noticed_day)
        if action:
            self.events.emit(DayEvent(DAY_EVENT_KINDS[family][action], key, day))

    def _apply(self, family: Family, data: Dict[str, Entity]) -> None:
        """
        Merges parsed entities into the cache, emitting day events, archiving
        new and pruned days and checking for a new week.
        """
        v2 = self.config.v2
        entry = self.store.entry(family)
        archive_type = ARCHIVE_TYPES[family]
        archived: List[ArchivedDay] = []

        if v2.week_policy != "preferCurrent":
            self._filter_week(data)

        if self.clear_keys:
            for key in [key for key in entry.timetable if key not in data]:
                log.info(f"{family.value}: removing '{key}' (absent from page)")
                del entry.timetable[key]

        for key, entity in data.items():
            cached = entry.timetable.get(key)
            if cached is None:
                entity.days = merge_days(entity.days, []).merged_days
                entry.timetable[key] = entity
                archived.extend(ArchivedDay(archive_type, key, day) for day in entity.days)
                continue

            diff = merge_days(entity.days, cached.days)
            for day in diff.changed:
                self._emit_day(family, key, cached, day, changed=True)
            for day in diff.added:
                self._emit_day(family, key, cached, day, changed=False)
            archived.extend(ArchivedDay(archive_type, key, day) for day in diff.added + diff.changed)
            cached.days = diff.merged_days

        site_min = min_day_index(data)
        current_week = WeekIndex.now()
        site_has_current_week = any(
            current_week.contains(day.day_index()) for entity in data.values() for day in entity.days
        )
        preserve = v2.preserve_current_week and not site_has_current_week

        for key in list(entry.timetable):
            entity = entry.timetable[key]
            kept = []
            for day in entity.days:
                if should_keep_day(day, site_min, preserve):
                    kept.append(day)
                else:
                    archived.append(ArchivedDay(archive_type, key, day))
            if len(kept) != len(entity.days):
                log.debug(f"{family.value}: pruned {len(entity.days) - len(kept)} days of '{key}'")
            entity.days = kept
            if not entity.days and key not in data:
                del entry.timetable[key]

        if archived:
            self.events.emit(FlushCacheEvent(archived))
        self._check_week(family)

    def _check_week(self, family: Family) -> None:
        entry = self.store.entry(family)
        max_week = max_week_index(entry.timetable)
        if max_week is None:
            return

        last = entry.last_week_index
        if last is not None and max_week > last:
            log.info(f"{family.value}: new week {max_week} (was {last})")
            self.events.emit(WeekEvent(CHAT_MODES[family], max_week))
            if max_week - last > self.config.v2.week_jump_threshold:
                error = WeekJumpError(
                    f"{family.value}: week index jumped from {last} to {max_week}",
                    {"stage": "week", "family": family.value, "from": last, "to": max_week},
                )
                log.warning(str(error))
                self.events.emit(ErrorEvent(error))
        entry.last_week_index = max_week

    # --- Team roster ---

    def _should_parse_team(self) -> bool:
        if not self.config.endpoints.team or self.config.local_mode:
            return False
        return self.force_parse or self.store.team.last_update is None or "team" not in self._team_gate

    async def parse_team(self) -> bool:
        """Refreshes the staff roster from every team page."""
        team = self.store.team
        pages = [(url, await self._fetch(url)) for url in self.config.endpoints.team]
        hashes = {url: hashlib.sha256(html.encode("utf-8")).hexdigest() for url, html in pages}
        self._team_gate["team"] = True

        if not self.force_parse and hashes == team.hashes:
            team.last_update = time.time()
            return True

        names: Dict[str, str] = {}
        for url, html in pages:
            names.update(parse_team_html(html))
        names = dict(sorted(names.items()))
        if names != team.names:
            team.last_changed = time.time()
            log.info(f"Team roster changed: {len(names)} names")
        team.names = names
        team.hashes = hashes
        team.last_update = time.time()
        return True

    # --- Cycle ---

    async def _run_actions(self) -> None:
        parse_team = self._should_parse_team()
        if self.config.sync_mode:
            groups_ok = await self.parse_timetable(Family.GROUPS)
            teachers_ok = await self.parse_timetable(Family.TEACHERS)
            if parse_team:
                await self.parse_team()
        else:
            actions = [self.parse_timetable(Family.GROUPS), self.parse_timetable(Family.TEACHERS)]
            if parse_team:
                actions.append(self.parse_team())
            # Let every action finish before reporting a failure
            results = await asyncio.gather(*actions, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            groups_ok, teachers_ok = results[0], results[1]

        if not groups_ok or not teachers_ok:
            raise EmptyTimetableError(
                "timetable is empty",
                {"stage": "cycle", "groups": groups_ok, "teachers": teachers_ok},
            )

    async def parse(self) -> CycleResult:
        """
        Runs one full cycle under the cycle timeout.

        Failures are recorded in the log ring; the cache keeps its last good
        state. The cache is saved and the event batch dispatched either way.
        """
        async with self._lock:
            started = time.monotonic()
            error = False
            try:
                await asyncio.wait_for(self._run_actions(), timeout=self.config.cycle_timeout)
                self.store.success_update = True
                self._log(f"success: {round((time.monotonic() - started) * 1000)} ms")
            except asyncio.TimeoutError:
                error = True
                self.store.success_update = False
                timeout_error = RaspError(
                    f"parse cycle timed out after {self.config.cycle_timeout}s", {"stage": "cycle"}
                )
                log.error(str(timeout_error))
                self._log(timeout_error)
            except Exception as e:
                error = True
                self.store.success_update = False
                log.error(f"Parse cycle failed: {e}", exc_info=True)
                self._log(e)
            finally:
                self.force_parse = False
                self.clear_keys = False

            await self.store.save()
            for snapshots in self._snapshots.values():
                snapshots.prune(date_utils.today())
            events = await self.events.dispatch()
            return CycleResult(error=error, duration=time.monotonic() - started, events=events)

    def _log(self, result: Union[str, BaseException]) -> None:
        self.logs.insert(0, LogEntry(date=time.time(), result=result))
        del self.logs[LOG_LIMIT:]
        if self.is_has_errors():
            self._log_noticer()

    def is_has_errors(self, need: int = LOG_COUNT_SEND) -> bool:
        """True when the `need` most recent cycles all failed."""
        recent = self.logs[:need]
        return len(recent) == need and all(entry.is_error for entry in recent)

    def _log_noticer(self) -> None:
        # Surface an error once, on exactly the third identical failure in a row
        first = self.logs[0]
        hits = 0
        for entry in self.logs[:LOG_COUNT_SEND + 1]:
            if not entry.is_error or entry.message != first.message:
                break
            hits += 1
        if hits == LOG_COUNT_SEND:
            self.events.emit(ErrorEvent(first.result))

    def get_delay_seconds(self, error: bool, now: Optional[datetime] = None) -> float:
        interval = self.config.update_interval
        if error:
            return interval.error
        hour = (now or datetime.now()).hour
        start, end = interval.activity_hours
        return interval.activity if start <= hour < end else interval.default

    async def run_loop(self) -> None:
        """Parses forever, sleeping between cycles until the delay passes or a forced parse wakes it."""
        log.info("Parser loop started")
        while True:
            result = await self.parse()
            delay = self.get_delay_seconds(result.error)
            log.debug(f"Next parse in {delay}s")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def force_loop_parse(self, clear_keys: bool = False) -> None:
        """Requests a parse that ignores content hashes; wakes the loop if it is waiting."""
        self.force_parse = True
        self.clear_keys = self.clear_keys or clear_keys
        self._wake.set()

    def flush_cache(self) -> FlushCacheEvent:
        """Emits every cached day as one archive batch."""
        days: List[ArchivedDay] = []
        for family in Family:
            archive_type = ARCHIVE_TYPES[family]
            for key, entity in self.store.entry(family).timetable.items():
                days.extend(ArchivedDay(archive_type, key, day) for day in entity.days)
        event = FlushCacheEvent(days)
        self.events.emit(event)
        return event

    @property
    def last_success_update(self) -> Optional[float]:
        """Time of the older of the two last timetable updates, if both happened."""
        updates = [self.store.groups.last_update, self.store.teachers.last_update]
        if None in updates:
            return None
        return min(updates)
